"""List-then-watch loop keeping an IndexedStore in sync with the API server."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from typing import Any

from kubestack.controller.store import IndexedStore
from kubestack.kube.client import ResourceClient
from kubestack.kube.errors import WatchExpiredError
from kubestack.models.stack import key_of
from kubestack.observability.logging import get_logger
from kubestack.observability.metrics import watch_events_total, watch_restarts_total

_INITIAL_BACKOFF_SECONDS = 1.0
_MAX_BACKOFF_SECONDS = 30.0


class EventHandler:
    """Callbacks invoked for every change the informer observes."""

    async def on_add(self, obj: dict[str, Any]) -> None:
        pass

    async def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        pass

    async def on_delete(self, obj: dict[str, Any]) -> None:
        pass


def _resource_version(obj: dict[str, Any]) -> str:
    return str((obj.get("metadata") or {}).get("resourceVersion", ""))


class Informer:
    """Feeds one kind from ``client`` into ``store`` and ``handler``.

    ``resync_period`` is a callable returning the delay before the next
    resync, or ``None`` for no periodic resync.
    """

    def __init__(
        self,
        client: ResourceClient,
        store: IndexedStore,
        handler: EventHandler,
        namespace: str = "",
        label_selector: str = "",
        resync_period: Callable[[], float] | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._handler = handler
        self._namespace = namespace
        self._label_selector = label_selector
        self._resync_period = resync_period
        self._synced = asyncio.Event()
        self._resource_version = ""
        self._log = get_logger("informer").bind(kind=client.kind)

    @property
    def kind(self) -> str:
        return self._client.kind

    @property
    def store(self) -> IndexedStore:
        return self._store

    def has_synced(self) -> bool:
        return self._synced.is_set()

    async def wait_for_sync(self) -> None:
        await self._synced.wait()

    async def run(self) -> None:
        """Run until cancelled."""
        resync_task: asyncio.Task[None] | None = None
        if self._resync_period is not None:
            resync_task = asyncio.create_task(self._resync_loop(), name=f"resync-{self.kind}")
        try:
            await self._list_and_watch()
        finally:
            if resync_task is not None:
                resync_task.cancel()
                await asyncio.gather(resync_task, return_exceptions=True)

    async def _list_and_watch(self) -> None:
        backoff = _INITIAL_BACKOFF_SECONDS
        needs_list = True
        while True:
            try:
                if needs_list:
                    await self._relist()
                    needs_list = False
                await self._watch()
                backoff = _INITIAL_BACKOFF_SECONDS
            except asyncio.CancelledError:
                raise
            except WatchExpiredError:
                watch_restarts_total.labels(kind=self.kind, reason="expired").inc()
                self._log.info("watch expired, relisting")
                needs_list = True
            except Exception as exc:
                watch_restarts_total.labels(kind=self.kind, reason="error").inc()
                self._log.warning("watch failed", error=str(exc), retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
                if not self.has_synced():
                    needs_list = True

    async def _relist(self) -> None:
        items, resource_version = await self._client.list(self._namespace, self._label_selector)
        previous = self._store.replace(items)
        self._resource_version = resource_version
        self._log.debug("listed", count=len(items), resource_version=resource_version)
        for obj in items:
            old = previous.pop(key_of(obj), None)
            if old is None:
                await self._handler.on_add(obj)
            elif _resource_version(old) != _resource_version(obj):
                await self._handler.on_update(old, obj)
        # whatever is left was deleted while we were not watching
        for old in previous.values():
            await self._handler.on_delete(old)
        self._synced.set()

    async def _watch(self) -> None:
        async for event_type, obj in self._client.watch(
            self._namespace, self._resource_version, self._label_selector
        ):
            watch_events_total.labels(kind=self.kind, type=event_type).inc()
            rv = _resource_version(obj)
            if rv:
                self._resource_version = rv
            if event_type == "BOOKMARK":
                continue
            if event_type == "ADDED" or event_type == "MODIFIED":
                old = self._store.upsert(obj)
                if old is None:
                    await self._handler.on_add(obj)
                else:
                    await self._handler.on_update(old, obj)
            elif event_type == "DELETED":
                old = self._store.delete(key_of(obj))
                await self._handler.on_delete(old if old is not None else obj)

    async def _resync_loop(self) -> None:
        assert self._resync_period is not None
        await self._synced.wait()
        while True:
            await asyncio.sleep(self._resync_period())
            objects = self._store.list()
            self._log.debug("resync", count=len(objects))
            for obj in objects:
                await self._handler.on_update(obj, obj)


def jittered(interval: float) -> Callable[[], float]:
    """Period in [interval, 2 * interval)."""
    return lambda: interval * (1 + random.random())  # noqa: S311


def fixed(interval: float) -> Callable[[], float]:
    return lambda: interval
