"""Stack revision history stored as annotations on the Stack itself.

Each revision is one annotation ``kubestack.io/revision-<n>`` whose value is
the canonical JSON of the spec at that revision. Numbers only ever grow and a
stored revision is never rewritten.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from kubestack.errors import RevisionMutatedError, RevisionNotFoundError, RevisionUnreadableError
from kubestack.models.stack import GROUP
from kubestack.observability.logging import get_logger
from kubestack.rollout.patch import Patch, escape_pointer

if TYPE_CHECKING:
    from kubestack.kube.client import ResourceClient
    from kubestack.models.stack import Stack

ANNOTATION_PREFIX = f"{GROUP}/revision-"
# revision numbers are written without leading zeros
_NUMBER = re.compile(r"0|[1-9][0-9]*")

_log = get_logger("rollout")


@dataclass(frozen=True)
class Revision:
    number: int
    spec: str

    @property
    def annotation(self) -> str:
        return f"{ANNOTATION_PREFIX}{self.number}"


@dataclass(frozen=True)
class RevisionHistory:
    """Revisions of one object, oldest first.

    ``annotations`` holds the object's other annotations so that a batched
    write of the annotations map leaves them in place.
    """

    revisions: tuple[Revision, ...] = ()
    annotations: dict[str, str] = field(default_factory=dict, compare=False)

    def find(self, number: int) -> Revision | None:
        for rev in self.revisions:
            if rev.number == number:
                return rev
        return None

    def last(self) -> Revision | None:
        return self.revisions[-1] if self.revisions else None

    def add(self, spec: str) -> RevisionHistory:
        last = self.last()
        number = (last.number if last is not None else 0) + 1
        return RevisionHistory((*self.revisions, Revision(number, spec)), self.annotations)

    def prune(self, limit: int) -> RevisionHistory:
        """Keep the ``limit`` most recent revisions."""
        if len(self.revisions) <= limit:
            return self
        return RevisionHistory(self.revisions[len(self.revisions) - limit :], self.annotations)

    def __len__(self) -> int:
        return len(self.revisions)


def revisions_of(obj: dict[str, Any]) -> RevisionHistory:
    """Parse the revision annotations of a raw object.

    Keys whose suffix is not a plain decimal number without leading zeros
    are not revisions; they are kept with the other annotations.
    """
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    revisions = []
    others = {}
    for key, value in annotations.items():
        if not key.startswith(ANNOTATION_PREFIX):
            others[key] = value
            continue
        suffix = key[len(ANNOTATION_PREFIX) :]
        if not _NUMBER.fullmatch(suffix):
            others[key] = value
            continue
        revisions.append(Revision(int(suffix), value))
    revisions.sort(key=lambda r: r.number)
    return RevisionHistory(tuple(revisions), others)


def diff(current: RevisionHistory, updated: RevisionHistory) -> Patch:
    """Patch turning ``current``'s revision annotations into ``updated``'s.

    Dropped revisions are removed one by one; new ones are written with a
    single ``add`` of the full annotations map.
    """
    patch = Patch()
    for rev in current.revisions:
        if updated.find(rev.number) is None:
            patch = patch.remove(f"/metadata/annotations/{escape_pointer(rev.annotation)}")

    added = False
    for rev in updated.revisions:
        existing = current.find(rev.number)
        if existing is None:
            added = True
        elif existing.spec != rev.spec:
            raise RevisionMutatedError(rev.number)

    if added:
        annotations = dict(updated.annotations)
        annotations.update({rev.annotation: rev.spec for rev in updated.revisions})
        patch = patch.add("/metadata/annotations", annotations)
    return patch


def serialize_spec(spec: Any) -> str:
    return json.dumps(spec, sort_keys=True, separators=(",", ":"))


def _precondition(stack: Stack) -> Patch:
    """Fail the patch if the Stack changed since ``stack`` was read."""
    if not stack.resource_version:
        return Patch()
    return Patch().test("/metadata/resourceVersion", stack.resource_version)


def load_spec(revision: Revision) -> dict[str, Any]:
    """Decode a stored revision; raise RevisionUnreadableError if it is not a JSON object."""
    try:
        spec = json.loads(revision.spec)
    except ValueError as exc:
        raise RevisionUnreadableError(revision.number) from exc
    if not isinstance(spec, dict):
        raise RevisionUnreadableError(revision.number)
    return spec


class RevisionRecorder:
    """Appends a revision whenever a Stack's spec changes.

    Recording never drops old revisions; see ``prune_revisions``.
    """

    def __init__(self, client: ResourceClient) -> None:
        self._client = client

    async def record(self, stack: Stack) -> dict[str, Any]:
        """Record the current spec if it is new; return the up-to-date raw object."""
        raw = stack.raw
        spec = serialize_spec(raw.get("spec"))
        history = revisions_of(raw)
        last = history.last()
        if last is not None and last.spec == spec:
            return raw

        updated = history.add(spec)
        patch = _precondition(stack).extend(diff(history, updated))
        new_revision = updated.last()
        assert new_revision is not None
        _log.info(
            "recording stack revision",
            stack=stack.key,
            revision=new_revision.number,
            retained=len(updated),
        )
        return await self._client.patch(stack.namespace, stack.name, patch.operations)


async def prune_revisions(client: ResourceClient, stack: Stack, keep: int) -> tuple[list[int], dict[str, Any]]:
    """Drop all but the ``keep`` most recent revisions.

    Returns the removed revision numbers and the up-to-date raw object.
    """
    history = revisions_of(stack.raw)
    pruned = history.prune(keep)
    removed = [r.number for r in history.revisions if pruned.find(r.number) is None]
    if not removed:
        return [], stack.raw
    _log.info("pruning stack revisions", stack=stack.key, removed=removed, retained=len(pruned))
    patch = _precondition(stack).extend(diff(history, pruned))
    return removed, await client.patch(stack.namespace, stack.name, patch.operations)


async def rollback(client: ResourceClient, stack: Stack, revision: int) -> dict[str, Any]:
    """Restore the spec stored at ``revision``.

    The restored spec is recorded again as a new revision on the next
    reconciliation.
    """
    found = revisions_of(stack.raw).find(revision)
    if found is None:
        raise RevisionNotFoundError(revision)
    spec = load_spec(found)
    _log.info("rolling back stack", stack=stack.key, revision=revision)
    patch = Patch().replace("/spec", spec)
    return await client.patch(stack.namespace, stack.name, patch.operations)
