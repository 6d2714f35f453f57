"""Bounded, deduplicating work queue of reconcile keys.

A key is *pending* from the moment it is submitted until it is handed to the
consumer. Submitting a pending key is a no-op; submitting a key that has
already been taken (and is being processed) queues it again so that changes
observed during processing are not lost.
"""

from __future__ import annotations

import asyncio

from kubestack.observability.metrics import queue_depth


class DedupQueue:
    """FIFO of distinct pending keys with a fixed capacity.

    ``submit`` waits while the queue holds ``capacity`` distinct keys.
    ``take`` waits for a key and returns ``None`` once the queue has been
    closed and drained.
    """

    def __init__(self, capacity: int, name: str = "reconcile") -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._name = name
        # dict preserves insertion order and gives O(1) membership
        self._pending: dict[str, None] = {}
        self._closed = False
        self._cond = asyncio.Condition()

    @property
    def name(self) -> str:
        return self._name

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    async def submit(self, key: str) -> None:
        """Queue ``key`` unless it is already pending. Dropped once closed."""
        async with self._cond:
            while True:
                if self._closed or key in self._pending:
                    return
                if len(self._pending) < self._capacity:
                    break
                await self._cond.wait()
            self._pending[key] = None
            queue_depth.labels(queue=self._name).set(len(self._pending))
            self._cond.notify_all()

    async def take(self) -> str | None:
        """Remove and return the oldest pending key."""
        async with self._cond:
            while not self._pending:
                if self._closed:
                    return None
                await self._cond.wait()
            key = next(iter(self._pending))
            del self._pending[key]
            queue_depth.labels(queue=self._name).set(len(self._pending))
            self._cond.notify_all()
            return key

    async def close(self) -> None:
        """Stop accepting keys. Pending keys are still delivered by ``take``."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()
