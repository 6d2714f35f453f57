"""Error types shared across the controller."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kubestack.models.stack import Stack


class StackValidationError(Exception):
    """The stack spec cannot be turned into cluster objects.

    Surfaced as a Failure status and never retried: the spec itself has to
    change. ``stack`` is set when the error happened while decoding a Stack,
    and then only carries its metadata.
    """

    def __init__(self, message: str, stack: Stack | None = None) -> None:
        super().__init__(message)
        self.stack = stack


class OwnershipConflictError(Exception):
    """A child object with the desired name exists and belongs to someone else."""

    def __init__(self, kind: str, key: str, owner: str | None = None) -> None:
        owned_by = f"stack {owner}" if owner else "another owner"
        super().__init__(f"{kind} {key} already exists and is owned by {owned_by}")
        self.kind = kind
        self.key = key
        self.owner = owner


class RetryableError(Exception):
    """A transient failure; the stack key is requeued after a short delay."""


class RevisionMutatedError(Exception):
    def __init__(self, revision: int) -> None:
        super().__init__(f"Changing a revision ({revision}) is not supported")
        self.revision = revision


class RevisionNotFoundError(Exception):
    def __init__(self, revision: int) -> None:
        super().__init__(f"Revision {revision} not found")
        self.revision = revision


class RevisionUnreadableError(Exception):
    """A stored revision is not a JSON object, usually after a manual edit."""

    def __init__(self, revision: int) -> None:
        super().__init__(f"Revision {revision} cannot be decoded")
        self.revision = revision


class SyncError(Exception):
    """A listener failed to complete its initial list before the deadline."""


class ApplyError(Exception):
    """A cluster write for one child failed for a non-transient reason."""

    def __init__(self, verb: str, kind: str, name: str, stack: str, cause: BaseException) -> None:
        super().__init__(f"cannot {verb} {kind} {name} of stack {stack}: {cause}")
        self.verb = verb
        self.kind = kind
        self.name = name
        self.stack = stack
        self.cause = cause
