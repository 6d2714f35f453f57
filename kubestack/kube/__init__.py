"""Kubernetes API access."""

from kubestack.kube.client import MANAGED_KINDS, KubeResourceClient, ResourceClient, StackClient
from kubestack.kube.errors import WatchExpiredError

__all__ = ["MANAGED_KINDS", "KubeResourceClient", "ResourceClient", "StackClient", "WatchExpiredError"]
