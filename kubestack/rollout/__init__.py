"""Stack revision history and rollback."""

from kubestack.rollout.patch import Patch
from kubestack.rollout.revisions import (
    ANNOTATION_PREFIX,
    Revision,
    RevisionHistory,
    RevisionRecorder,
    diff,
    load_spec,
    prune_revisions,
    revisions_of,
    rollback,
)

__all__ = [
    "ANNOTATION_PREFIX",
    "Patch",
    "Revision",
    "RevisionHistory",
    "RevisionRecorder",
    "diff",
    "load_spec",
    "prune_revisions",
    "revisions_of",
    "rollback",
]
