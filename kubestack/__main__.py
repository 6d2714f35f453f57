"""Entry point for `python -m kubestack`.

Usage:
    python -m kubestack
    kubestack
"""

from __future__ import annotations

import asyncio

from kubestack.app import main


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
