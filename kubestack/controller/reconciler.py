"""The reconciliation loop: one stack at a time, desired versus actual.

A single consumer multiplexes three sources: the reconcile queue fed by the
listeners, a small retry queue for keys that hit a transient failure, and the
deletion channel. Deletions are handled first whenever several sources are
ready, so cleanup is never starved by a backlog of unrelated updates.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from kubestack.controller.owner_cache import OwnerCache
from kubestack.controller.status import generate_status, status_failure
from kubestack.controller.updater import ResourceUpdater
from kubestack.convert.services import ServiceStrategy
from kubestack.convert.stack import stack_to_state
from kubestack.errors import (
    ApplyError,
    OwnershipConflictError,
    RetryableError,
    RevisionMutatedError,
    StackValidationError,
)
from kubestack.kube.errors import API_ERRORS, is_conflict, is_invalid, is_transient, reason
from kubestack.models.stack import KIND, Stack, StackStatus, object_key
from kubestack.observability.logging import get_logger
from kubestack.observability.metrics import (
    reconcile_duration_seconds,
    reconciliations_total,
    retries_scheduled_total,
)
from kubestack.rollout.revisions import RevisionRecorder
from kubestack.stackresources.diff import StackStateDiff, compute_diff
from kubestack.stackresources.state import SERVICE, WORKLOAD_KINDS, StackState, empty_state
from kubestack.workqueue.dedup import DedupQueue

_log = get_logger("reconciler")

# sources in the order they are served when several are ready
_DELETION = "deletion"
_RECONCILE = "reconcile"
_RETRY = "retry"
_SOURCES = (_DELETION, _RECONCILE, _RETRY)


class StackStore(Protocol):
    def get(self, key: str) -> Stack | None: ...


class ChildrenStore(Protocol):
    def current_state(self, key: str) -> StackState: ...


def owner_reference(stack: Stack) -> dict[str, Any]:
    return {
        "apiVersion": stack.api_version,
        "kind": KIND,
        "name": stack.name,
        "uid": stack.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def set_stack_ownership(state: StackState, stack: Stack) -> None:
    """Point every workload and service in ``state`` at ``stack``."""
    refs = [owner_reference(stack)]
    for kind in (*WORKLOAD_KINDS, SERVICE):
        for obj in state.of_kind(kind).values():
            obj.setdefault("metadata", {})["ownerReferences"] = [dict(r) for r in refs]


class StackReconciler:
    def __init__(
        self,
        stacks: StackStore,
        children: ChildrenStore,
        updater: ResourceUpdater,
        owner_cache: OwnerCache,
        recorder: RevisionRecorder,
        strategy: ServiceStrategy,
        retry_delay: float = 1.0,
        retry_capacity: int = 20,
    ) -> None:
        self._stacks = stacks
        self._children = children
        self._updater = updater
        self._owner_cache = owner_cache
        self._recorder = recorder
        self._strategy = strategy
        self._retry_delay = retry_delay
        self._retry_queue = DedupQueue(retry_capacity, name="retry")
        self._retry_tasks: set[asyncio.Task[None]] = set()
        self._deletions: asyncio.Queue[Stack] | None = None

    @property
    def retry_queue(self) -> DedupQueue:
        return self._retry_queue

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(
        self,
        reconcile_queue: DedupQueue,
        deletions: asyncio.Queue[Stack],
        stop: asyncio.Event,
    ) -> None:
        """Serve all sources until ``stop`` is set or every source is closed."""
        self._deletions = deletions
        takers: dict[str, Callable[[], Awaitable[Any]]] = {
            _DELETION: deletions.get,
            _RECONCILE: reconcile_queue.take,
            _RETRY: self._retry_queue.take,
        }
        waiting = {name: asyncio.ensure_future(take()) for name, take in takers.items()}
        stopped = asyncio.ensure_future(stop.wait())
        _log.info("reconciler started")
        try:
            while waiting:
                done, _ = await asyncio.wait(
                    [*waiting.values(), stopped], return_when=asyncio.FIRST_COMPLETED
                )
                if stopped in done:
                    break
                for name in _SOURCES:
                    fut = waiting.get(name)
                    if fut is None or fut not in done:
                        continue
                    item = fut.result()
                    if item is None:
                        # source closed and drained
                        del waiting[name]
                        continue
                    if name == _DELETION:
                        await self._guarded(self._handle_deletion, item)
                    else:
                        await self._guarded(self.reconcile, item)
                    waiting[name] = asyncio.ensure_future(takers[name]())
        finally:
            for fut in (*waiting.values(), stopped):
                fut.cancel()
            await asyncio.gather(*waiting.values(), stopped, return_exceptions=True)
            await self.close()
            _log.info("reconciler stopped")

    async def close(self) -> None:
        for task in self._retry_tasks:
            task.cancel()
        await asyncio.gather(*self._retry_tasks, return_exceptions=True)
        self._retry_tasks.clear()
        await self._retry_queue.close()

    async def _guarded(self, fn: Callable[[Any], Awaitable[None]], item: Any) -> None:
        try:
            await fn(item)
        except Exception as exc:
            key = item.key if isinstance(item, Stack) else item
            reconciliations_total.labels(result="error").inc()
            _log.error("stack processing failed", stack=key, error=str(exc), exc_info=True)

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    def _schedule_retry(self, key: str, cause: Exception) -> None:
        self._later(key, cause, lambda: self._retry_queue.submit(key))

    def _schedule_deletion_retry(self, stack: Stack, cause: Exception) -> None:
        deletions = self._deletions
        if deletions is None:
            _log.error("stack deletion not retried", stack=stack.key, reason=str(cause))
            return
        self._later(stack.key, cause, lambda: deletions.put(stack))

    def _later(self, key: str, cause: Exception, requeue: Callable[[], Awaitable[None]]) -> None:
        retries_scheduled_total.inc()
        _log.warning("retrying stack later", stack=key, delay=self._retry_delay, reason=str(cause))

        async def _requeue() -> None:
            await asyncio.sleep(self._retry_delay)
            await requeue()

        task = asyncio.create_task(_requeue(), name=f"retry-{key}")
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, key: str) -> None:
        """Converge the children of stack ``key`` and report the outcome."""
        start = time.monotonic()
        try:
            result = await self._reconcile(key)
        finally:
            reconcile_duration_seconds.observe(time.monotonic() - start)
        reconciliations_total.labels(result=result).inc()

    async def _reconcile(self, key: str) -> str:
        try:
            stack = self._stacks.get(key)
        except StackValidationError as exc:
            _log.warning("invalid stack", stack=key, error=str(exc))
            if exc.stack is not None:
                await self._write_status(exc.stack, status_failure(exc))
            return "invalid"
        if stack is None:
            _log.debug("stack no longer exists", stack=key)
            return "skipped"
        if stack.deletion_timestamp:
            try:
                await self.delete_stack_children(stack)
            except RetryableError as exc:
                self._schedule_retry(key, exc)
                return "failure"
            return "deleted"

        error: str | None = None
        try:
            await self._record_revision(stack)
            conflicts = await self._reconcile_children(stack)
            if conflicts:
                error = "; ".join(str(c) for c in conflicts)
        except RetryableError as exc:
            self._schedule_retry(key, exc)
            error = str(exc)
        except (StackValidationError, RevisionMutatedError, ApplyError) as exc:
            _log.warning("stack reconciliation failed", stack=key, error=str(exc))
            error = str(exc)

        if error is not None:
            status = status_failure(error)
        else:
            status = generate_status(stack, self._children.current_state(key))
        await self._write_status(stack, status)
        return "failure" if error is not None else "success"

    async def _record_revision(self, stack: Stack) -> None:
        try:
            raw = await self._recorder.record(stack)
        except API_ERRORS as exc:
            # a failed resourceVersion precondition is reported as 422
            if is_conflict(exc) or is_invalid(exc) or is_transient(exc):
                raise RetryableError(f"revision of stack {stack.key}: {reason(exc)}") from exc
            raise
        if raw is not stack.raw:
            stack.raw = raw
            stack.resource_version = str((raw.get("metadata") or {}).get("resourceVersion", ""))

    async def _reconcile_children(self, stack: Stack) -> list[OwnershipConflictError]:
        current = self._children.current_state(stack.key)
        desired = stack_to_state(stack, self._strategy, current)
        set_stack_ownership(desired, stack)
        diff = compute_diff(current, desired)
        conflicts = self._claimed_elsewhere(stack, diff)
        if diff.empty():
            _log.debug("stack children up to date", stack=stack.key)
        else:
            _log.info("applying stack diff", stack=stack.key, **diff.summary())
        conflicts.extend(await self._updater.apply(stack, diff))
        for conflict in conflicts:
            # the stack is requeued once the child it lost is deleted
            self._owner_cache.claim(conflict.kind, conflict.key, stack.key)
        return conflicts

    def _claimed_elsewhere(self, stack: Stack, diff: StackStateDiff) -> list[OwnershipConflictError]:
        """Drop creations of objects another stack already owns."""
        conflicts = []
        for kind, kd in diff.kinds.items():
            keep = []
            for obj in kd.to_add:
                meta = obj.get("metadata") or {}
                namespace, name = meta.get("namespace", ""), meta.get("name", "")
                owner = self._owner_cache.owner_of_ref(kind, namespace, name)
                if owner is not None and owner != stack.key:
                    conflicts.append(OwnershipConflictError(kind, object_key(namespace, name), owner))
                else:
                    keep.append(obj)
            kd.to_add = keep
        for conflict in conflicts:
            _log.warning(
                "ownership conflict", stack=stack.key, kind=conflict.kind, child=conflict.key, owner=conflict.owner
            )
        return conflicts

    async def _write_status(self, stack: Stack, status: StackStatus) -> None:
        try:
            await self._updater.update_stack_status(stack, status)
        except RetryableError as exc:
            self._schedule_retry(stack.key, exc)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def _handle_deletion(self, stack: Stack) -> None:
        try:
            await self.delete_stack_children(stack)
        except RetryableError as exc:
            self._schedule_deletion_retry(stack, exc)
            return
        reconciliations_total.labels(result="deleted").inc()

    async def delete_stack_children(self, stack: Stack) -> None:
        """Remove everything the stack owns without waiting for garbage collection."""
        current = self._children.current_state(stack.key)
        diff = compute_diff(current, empty_state())
        _log.info("removing stack children", stack=stack.key, count=len(current))
        await self._updater.apply(stack, diff)
        await self._updater.delete_secrets_and_config_maps(stack)
        self._owner_cache.forget(stack.key)

