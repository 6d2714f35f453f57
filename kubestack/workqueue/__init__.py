"""Deduplicating work queue feeding the reconciler."""

from kubestack.workqueue.dedup import DedupQueue

__all__ = ["DedupQueue"]
