"""Thread-safe keyed object store with secondary indexes."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any

from kubestack.models.stack import key_of

Indexer = Callable[[dict[str, Any]], list[str]]


class IndexedStore:
    """Objects keyed by ``namespace/name`` plus any number of named indexes.

    Each indexer maps an object to the index values it should be found
    under. Index membership is recomputed on every write.
    """

    def __init__(self, indexers: dict[str, Indexer] | None = None) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, dict[str, Any]] = {}
        self._indexers = dict(indexers or {})
        self._indices: dict[str, dict[str, set[str]]] = {name: {} for name in self._indexers}

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._items.get(key)

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def upsert(self, obj: dict[str, Any]) -> dict[str, Any] | None:
        """Insert or replace ``obj``; return the previous version, if any."""
        key = key_of(obj)
        with self._lock:
            old = self._items.get(key)
            if old is not None:
                self._unindex(key, old)
            self._items[key] = obj
            self._index(key, obj)
            return old

    def delete(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            old = self._items.pop(key, None)
            if old is not None:
                self._unindex(key, old)
            return old

    def replace(self, objects: Iterable[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        """Swap the whole content for ``objects``; return the previous content."""
        with self._lock:
            previous = self._items
            self._items = {}
            self._indices = {name: {} for name in self._indexers}
            for obj in objects:
                key = key_of(obj)
                self._items[key] = obj
                self._index(key, obj)
            return previous

    def by_index(self, index: str, value: str) -> list[dict[str, Any]]:
        with self._lock:
            keys = self._indices[index].get(value, ())
            return [self._items[k] for k in sorted(keys)]

    def _index(self, key: str, obj: dict[str, Any]) -> None:
        for name, indexer in self._indexers.items():
            for value in indexer(obj):
                self._indices[name].setdefault(value, set()).add(key)

    def _unindex(self, key: str, obj: dict[str, Any]) -> None:
        for name, indexer in self._indexers.items():
            for value in indexer(obj):
                members = self._indices[name].get(value)
                if members is None:
                    continue
                members.discard(key)
                if not members:
                    del self._indices[name][value]
