"""REST API layer.

Exposes:
    create_app -- FastAPI application factory.
"""

from kubestack.api.app import create_app

__all__ = ["create_app"]
