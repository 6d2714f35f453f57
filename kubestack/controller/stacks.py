"""Stack listener: tracks Stack objects and feeds the work queues."""

from __future__ import annotations

import asyncio
from typing import Any

from kubestack.controller.informer import EventHandler, Informer, fixed
from kubestack.controller.owner_cache import OwnerCache
from kubestack.controller.store import IndexedStore
from kubestack.conversions.base import StackConverter
from kubestack.errors import StackValidationError
from kubestack.kube.client import ResourceClient
from kubestack.models.stack import Stack, key_of
from kubestack.observability.logging import get_logger
from kubestack.workqueue.dedup import DedupQueue

_log = get_logger("stacks")


class _StackEventHandler(EventHandler):
    def __init__(self, listener: StackListener) -> None:
        self._listener = listener

    async def on_add(self, obj: dict[str, Any]) -> None:
        await self._listener._enqueue(obj)

    async def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        await self._listener._enqueue(new)

    async def on_delete(self, obj: dict[str, Any]) -> None:
        await self._listener._deleted(obj)


class StackListener:
    def __init__(
        self,
        client: ResourceClient,
        converter: StackConverter,
        queue: DedupQueue,
        deletions: asyncio.Queue[Stack],
        owner_cache: OwnerCache,
        namespace: str = "",
        resync_interval: float | None = None,
    ) -> None:
        self._converter = converter
        self._queue = queue
        self._deletions = deletions
        self._owner_cache = owner_cache
        self._store = IndexedStore()
        self._informer = Informer(
            client,
            self._store,
            _StackEventHandler(self),
            namespace=namespace,
            resync_period=fixed(resync_interval) if resync_interval else None,
        )
        self._task: asyncio.Task[None] | None = None

    def has_synced(self) -> bool:
        return self._informer.has_synced()

    def start(self) -> None:
        self._task = asyncio.create_task(self._informer.run(), name="informer-stack")

    async def wait_for_sync(self) -> None:
        await self._informer.wait_for_sync()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    def get(self, key: str) -> Stack | None:
        """Canonical form of the cached stack ``key``.

        Raises StackValidationError when the stored object cannot be decoded;
        the error carries the stack's metadata.
        """
        raw = self._store.get(key)
        if raw is None:
            return None
        return self._converter.to_canonical(raw)

    def keys(self) -> list[str]:
        return self._store.keys()

    async def _enqueue(self, obj: dict[str, Any]) -> None:
        meta = obj.get("metadata") or {}
        key = key_of(obj)
        self._owner_cache.register(meta.get("uid", ""), key)
        await self._queue.submit(key)

    async def _deleted(self, obj: dict[str, Any]) -> None:
        try:
            stack = self._converter.to_canonical(obj)
        except StackValidationError as exc:
            assert exc.stack is not None
            stack = exc.stack
        _log.info("stack deleted", stack=stack.key)
        await self._deletions.put(stack)
