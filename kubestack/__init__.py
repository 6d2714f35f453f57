"""kubestack: a Kubernetes controller reconciling Stack resources into workloads."""

__version__ = "0.1.0"
