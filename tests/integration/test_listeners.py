"""Listener behaviour against the in-memory cluster."""

from __future__ import annotations

import asyncio

import pytest
from fakecluster import FakeCluster, make_stack_raw, wait_until

from kubestack.controller import ChildrenListener, OwnerCache, StackListener
from kubestack.conversions import converter_for
from kubestack.models.stack import KIND, STACK_LABEL, Stack
from kubestack.stackresources.state import CONFIG_MAP, DEPLOYMENT, KINDS
from kubestack.workqueue.dedup import DedupQueue

pytestmark = pytest.mark.integration


def _deployment(name: str, stack: str) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": DEPLOYMENT,
        "metadata": {"name": name, "namespace": "default", "labels": {STACK_LABEL: stack}},
        "spec": {"replicas": 1},
    }


# ---------------------------------------------------------------------------
# Children
# ---------------------------------------------------------------------------


class TestChildrenListener:
    async def test_initial_list_does_not_trigger_reconciliation(self, cluster: FakeCluster) -> None:
        cluster.add(DEPLOYMENT, _deployment("web", "app"))
        queue = DedupQueue(10)
        owner_cache = OwnerCache()
        children = ChildrenListener([cluster.client(k) for k in KINDS], queue, owner_cache)
        try:
            assert await children.start_and_wait_for_full_sync(asyncio.Event())
            assert children.has_synced()
            assert len(queue) == 0
            assert owner_cache.children_of("default/app") == ["Deployment/default/web"]
            assert len(children.current_state("default/app")) == 1
        finally:
            await children.stop()

    async def test_changes_after_sync_enqueue_owner(self, cluster: FakeCluster) -> None:
        queue = DedupQueue(10)
        children = ChildrenListener([cluster.client(k) for k in KINDS], queue, OwnerCache())
        try:
            assert await children.start_and_wait_for_full_sync(asyncio.Event())
            cluster.add(DEPLOYMENT, _deployment("web", "app"))
            await wait_until(lambda: "default/app" in queue)
            assert await queue.take() == "default/app"

            cluster.remove(DEPLOYMENT, "default/web")
            await wait_until(lambda: "default/app" in queue)
            await wait_until(lambda: len(children.current_state("default/app")) == 0)
        finally:
            await children.stop()

    async def test_unlabelled_objects_ignored(self, cluster: FakeCluster) -> None:
        queue = DedupQueue(10)
        children = ChildrenListener([cluster.client(k) for k in KINDS], queue, OwnerCache())
        try:
            assert await children.start_and_wait_for_full_sync(asyncio.Event())
            cluster.add(CONFIG_MAP, {"metadata": {"name": "other", "namespace": "default"}, "data": {}})
            cluster.add(DEPLOYMENT, _deployment("web", "app"))
            await wait_until(lambda: "default/app" in queue)
            assert len(queue) == 1
        finally:
            await children.stop()

    async def test_stop_before_sync(self, cluster: FakeCluster) -> None:
        stop = asyncio.Event()
        stop.set()
        children = ChildrenListener([cluster.client(DEPLOYMENT)], DedupQueue(1), OwnerCache())
        try:
            # sync may or may not win the race against an already-set stop event
            result = await children.start_and_wait_for_full_sync(stop)
            assert result == children.has_synced()
        finally:
            await children.stop()


# ---------------------------------------------------------------------------
# Stacks
# ---------------------------------------------------------------------------


class TestStackListener:
    def _listener(self, cluster: FakeCluster) -> tuple[StackListener, DedupQueue, asyncio.Queue[Stack], OwnerCache]:
        queue = DedupQueue(10)
        deletions: asyncio.Queue[Stack] = asyncio.Queue(5)
        owner_cache = OwnerCache()
        listener = StackListener(cluster.client(KIND), converter_for("v1alpha3"), queue, deletions, owner_cache)
        return listener, queue, deletions, owner_cache

    async def test_added_stack_enqueued_and_registered(self, cluster: FakeCluster) -> None:
        listener, queue, _, owner_cache = self._listener(cluster)
        listener.start()
        try:
            await listener.wait_for_sync()
            created = cluster.add(KIND, make_stack_raw("app", [{"name": "web", "image": "nginx"}]))
            await wait_until(lambda: "default/app" in queue)

            stack = listener.get("default/app")
            assert stack is not None
            assert stack.uid == created["metadata"]["uid"]
            assert stack.spec is not None and stack.spec.services[0].name == "web"

            child = {
                "kind": DEPLOYMENT,
                "metadata": {
                    "name": "web",
                    "namespace": "default",
                    "ownerReferences": [{"kind": "Stack", "name": "renamed", "uid": created["metadata"]["uid"]}],
                },
            }
            assert owner_cache.resolve(child) == "default/app"
        finally:
            await listener.stop()

    async def test_deleted_stack_sent_to_deletions(self, cluster: FakeCluster) -> None:
        listener, _, deletions, _ = self._listener(cluster)
        cluster.add(KIND, make_stack_raw("app", [{"name": "web", "image": "nginx"}]))
        listener.start()
        try:
            await listener.wait_for_sync()
            cluster.remove(KIND, "default/app")
            stack = await asyncio.wait_for(deletions.get(), timeout=5)
            assert stack.key == "default/app"
            assert stack.spec is not None
            assert listener.get("default/app") is None
        finally:
            await listener.stop()

    async def test_deleted_invalid_stack_still_sent(self, cluster: FakeCluster) -> None:
        listener, _, deletions, _ = self._listener(cluster)
        cluster.add(KIND, make_stack_raw("broken", [{"image": "nginx"}]))
        listener.start()
        try:
            await listener.wait_for_sync()
            cluster.remove(KIND, "default/broken")
            stack = await asyncio.wait_for(deletions.get(), timeout=5)
            assert stack.key == "default/broken"
            assert stack.spec is None
        finally:
            await listener.stop()

    async def test_expired_watch_relists(self, cluster: FakeCluster) -> None:
        listener, queue, _, _ = self._listener(cluster)
        listener.start()
        try:
            await listener.wait_for_sync()
            # written without a watch event: only a relist can discover it
            cluster.add(KIND, make_stack_raw("late", [{"name": "web", "image": "nginx"}]), observed=False)
            await wait_until(lambda: "default/late" in listener.keys())
            assert "default/late" in queue
        finally:
            await listener.stop()
