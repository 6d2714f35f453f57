"""Listeners, owner tracking and the reconciliation loop."""

from kubestack.controller.children import ChildrenListener
from kubestack.controller.owner_cache import OwnerCache
from kubestack.controller.reconciler import StackReconciler
from kubestack.controller.stacks import StackListener
from kubestack.controller.updater import ResourceUpdater

__all__ = [
    "ChildrenListener",
    "OwnerCache",
    "ResourceUpdater",
    "StackListener",
    "StackReconciler",
]
