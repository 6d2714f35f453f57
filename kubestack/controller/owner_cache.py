"""Resolution of child objects to the stack that owns them.

Mappings only go from child to owner key; stacks are looked up by key, never
referenced directly. A child keeps its owner until the child itself is
deleted, even when the owning Stack is already gone.
"""

from __future__ import annotations

import threading
from typing import Any

from kubestack.models.stack import KIND, STACK_LABEL, Stack, object_key
from kubestack.observability.logging import get_logger

_log = get_logger("owner_cache")


def child_ref(kind: str, namespace: str, name: str) -> str:
    return f"{kind}/{namespace}/{name}"


def _ref_of(obj: dict[str, Any]) -> str:
    meta = obj.get("metadata") or {}
    return child_ref(obj.get("kind", ""), meta.get("namespace", ""), meta.get("name", ""))


class OwnerCache:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._stacks_by_uid: dict[str, str] = {}
        self._owner_by_child: dict[str, str] = {}
        self._children_by_owner: dict[str, set[str]] = {}
        # stacks that wanted a child owned by another stack
        self._claimants_by_child: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # Stacks
    # ------------------------------------------------------------------

    def refresh(self, stacks: list[Stack]) -> None:
        """Rebuild the uid index from a full list of stacks."""
        with self._lock:
            self._stacks_by_uid = {s.uid: s.key for s in stacks if s.uid}
        _log.debug("owner cache refreshed", stacks=len(stacks))

    def register(self, uid: str, key: str) -> None:
        if not uid:
            return
        with self._lock:
            self._stacks_by_uid[uid] = key

    def forget(self, key: str) -> None:
        """Drop a deleted stack's uid. Its children stay mapped until they go away."""
        with self._lock:
            for uid in [u for u, k in self._stacks_by_uid.items() if k == key]:
                del self._stacks_by_uid[uid]
            for ref in [r for r, claimants in self._claimants_by_child.items() if key in claimants]:
                self._claimants_by_child[ref].discard(key)
                if not self._claimants_by_child[ref]:
                    del self._claimants_by_child[ref]

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    def resolve(self, obj: dict[str, Any]) -> str | None:
        """Owner key derived from the object itself, ignoring recorded ownership."""
        meta = obj.get("metadata") or {}
        namespace = meta.get("namespace", "")
        refs = [r for r in meta.get("ownerReferences") or [] if r.get("kind") == KIND]
        controller_refs = [r for r in refs if r.get("controller")] or refs
        with self._lock:
            for ref in controller_refs:
                key = self._stacks_by_uid.get(ref.get("uid", ""))
                if key is not None:
                    return key
        for ref in controller_refs:
            if ref.get("name"):
                return object_key(namespace, ref["name"])
        stack_name = (meta.get("labels") or {}).get(STACK_LABEL)
        if stack_name:
            return object_key(namespace, stack_name)
        return None

    def owner_of(self, obj: dict[str, Any]) -> str | None:
        """Recorded owner of ``obj``, falling back to resolving it."""
        with self._lock:
            owner = self._owner_by_child.get(_ref_of(obj))
        if owner is not None:
            return owner
        return self.resolve(obj)

    def owner_of_ref(self, kind: str, namespace: str, name: str) -> str | None:
        with self._lock:
            return self._owner_by_child.get(child_ref(kind, namespace, name))

    def observe(self, obj: dict[str, Any]) -> str | None:
        """Record ownership of a newly seen or changed child; return its owner.

        A child already recorded under one stack is never silently moved to
        another: the first owner is kept until the child is released.
        """
        ref = _ref_of(obj)
        owner = self.resolve(obj)
        with self._lock:
            existing = self._owner_by_child.get(ref)
            if existing is not None and owner is None:
                # owner reference and stack label were both cleared
                self.release(obj)
                return None
            if existing is not None:
                if owner != existing:
                    _log.error("child ownership change rejected", child=ref, owner=existing, claimed_by=owner)
                return existing
            if owner is None:
                return None
            self._owner_by_child[ref] = owner
            self._children_by_owner.setdefault(owner, set()).add(ref)
            return owner

    def release(self, obj: dict[str, Any]) -> str | None:
        """Forget a deleted child; return the owner it had."""
        ref = _ref_of(obj)
        with self._lock:
            owner = self._owner_by_child.pop(ref, None)
            if owner is None:
                return None
            children = self._children_by_owner.get(owner)
            if children is not None:
                children.discard(ref)
                if not children:
                    del self._children_by_owner[owner]
            return owner

    def claim(self, kind: str, key: str, claimant: str) -> None:
        """Remember that ``claimant`` lost child ``kind`` ``key`` to another owner."""
        with self._lock:
            self._claimants_by_child.setdefault(f"{kind}/{key}", set()).add(claimant)

    def take_claimants(self, obj: dict[str, Any]) -> list[str]:
        """Stacks waiting for a deleted child; each is returned once."""
        with self._lock:
            return sorted(self._claimants_by_child.pop(_ref_of(obj), ()))

    def children_of(self, key: str) -> list[str]:
        with self._lock:
            return sorted(self._children_by_owner.get(key, ()))

    def owners(self) -> list[str]:
        with self._lock:
            return sorted(self._children_by_owner)
