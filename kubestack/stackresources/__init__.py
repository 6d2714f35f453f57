"""Child object sets and the diff between them."""

from kubestack.stackresources.diff import KindDiff, StackStateDiff, compute_diff, objects_equal
from kubestack.stackresources.state import KINDS, WORKLOAD_KINDS, StackState, empty_state

__all__ = [
    "KINDS",
    "WORKLOAD_KINDS",
    "KindDiff",
    "StackState",
    "StackStateDiff",
    "compute_diff",
    "empty_state",
    "objects_equal",
]
