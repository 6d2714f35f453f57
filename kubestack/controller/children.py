"""Watches every child kind and routes changes to the owning stack's key."""

from __future__ import annotations

import asyncio
from typing import Any

from kubestack.controller.informer import EventHandler, Informer, jittered
from kubestack.controller.owner_cache import OwnerCache
from kubestack.controller.store import IndexedStore
from kubestack.kube.client import ResourceClient
from kubestack.models.stack import STACK_LABEL, object_key
from kubestack.observability.logging import get_logger
from kubestack.stackresources.state import StackState
from kubestack.workqueue.dedup import DedupQueue

BY_STACK_INDEX = "by-stack"

_log = get_logger("children")


def by_stack_indexer(obj: dict[str, Any]) -> list[str]:
    meta = obj.get("metadata") or {}
    stack_name = (meta.get("labels") or {}).get(STACK_LABEL)
    if not stack_name:
        return []
    return [object_key(meta.get("namespace", ""), stack_name)]


class _ChildEventHandler(EventHandler):
    def __init__(self, listener: ChildrenListener, kind: str) -> None:
        self._listener = listener
        self._kind = kind

    async def on_add(self, obj: dict[str, Any]) -> None:
        await self._listener._changed(self._kind, self._listener._owner_cache.observe(obj))

    async def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        await self._listener._changed(self._kind, self._listener._owner_cache.observe(new))

    async def on_delete(self, obj: dict[str, Any]) -> None:
        cache = self._listener._owner_cache
        owner = cache.release(obj)
        await self._listener._changed(self._kind, owner or cache.resolve(obj))
        for claimant in cache.take_claimants(obj):
            await self._listener._changed(self._kind, claimant)


class ChildrenListener:
    """Owner-indexed view of all children, kept current by one informer per kind.

    Events seen before every kind has completed its initial list only feed
    the stores and the owner cache; they trigger no reconciliation.
    """

    def __init__(
        self,
        clients: list[ResourceClient],
        queue: DedupQueue,
        owner_cache: OwnerCache,
        namespace: str = "",
        resync_interval: float | None = None,
    ) -> None:
        self._queue = queue
        self._owner_cache = owner_cache
        self._informers: dict[str, Informer] = {}
        for client in clients:
            store = IndexedStore({BY_STACK_INDEX: by_stack_indexer})
            self._informers[client.kind] = Informer(
                client,
                store,
                _ChildEventHandler(self, client.kind),
                namespace=namespace,
                label_selector=STACK_LABEL,
                resync_period=jittered(resync_interval) if resync_interval else None,
            )
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def kinds(self) -> list[str]:
        return list(self._informers)

    def has_synced(self) -> bool:
        return all(i.has_synced() for i in self._informers.values())

    async def _changed(self, kind: str, owner: str | None) -> None:
        if owner is None or not self.has_synced():
            return
        _log.debug("child changed", kind=kind, stack=owner)
        await self._queue.submit(owner)

    def start(self) -> None:
        for kind, informer in self._informers.items():
            self._tasks.append(asyncio.create_task(informer.run(), name=f"informer-{kind}"))

    async def start_and_wait_for_full_sync(self, stop: asyncio.Event) -> bool:
        """Start watching; return True once every kind is synced, False if ``stop`` fires first."""
        self.start()
        synced = asyncio.ensure_future(
            asyncio.gather(*(i.wait_for_sync() for i in self._informers.values()))
        )
        stopped = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait([synced, stopped], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (synced, stopped):
                if not fut.done():
                    fut.cancel()
        if self.has_synced():
            _log.info("children listener synced", kinds=self.kinds)
            return True
        return False

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def current_state(self, key: str) -> StackState:
        """Children currently owned by the stack ``key``."""
        state = StackState()
        for kind, informer in self._informers.items():
            for obj in informer.store.by_index(BY_STACK_INDEX, key):
                if self._owner_cache.owner_of(obj) == key:
                    state.add(obj)
        return state
