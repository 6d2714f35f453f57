"""Shared fixtures for kubestack integration tests.

The ``harness`` fixture wires the real listeners, updater and reconciler on
top of a ``FakeCluster``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest
from fakecluster import FakeCluster, Harness

from kubestack.controller import ChildrenListener, OwnerCache, ResourceUpdater, StackListener, StackReconciler
from kubestack.conversions import converter_for
from kubestack.convert import LoadBalancerServiceStrategy
from kubestack.models.stack import KIND, Stack
from kubestack.rollout.revisions import RevisionRecorder
from kubestack.stackresources.state import KINDS
from kubestack.workqueue.dedup import DedupQueue


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
async def harness(cluster: FakeCluster) -> AsyncIterator[Harness]:
    owner_cache = OwnerCache()
    queue = DedupQueue(50)
    deletions: asyncio.Queue[Stack] = asyncio.Queue(10)
    stop = asyncio.Event()
    converter = converter_for("v1alpha3")

    child_clients = {kind: cluster.client(kind) for kind in KINDS}
    children = ChildrenListener(list(child_clients.values()), queue, owner_cache)
    assert await children.start_and_wait_for_full_sync(stop)

    stack_client = cluster.client(KIND)
    stacks = StackListener(stack_client, converter, queue, deletions, owner_cache)
    stacks.start()
    await stacks.wait_for_sync()

    updater = ResourceUpdater(child_clients, stack_client, converter)  # type: ignore[arg-type]
    reconciler = StackReconciler(
        stacks,
        children,
        updater,
        owner_cache,
        RevisionRecorder(stack_client),
        LoadBalancerServiceStrategy(),
        retry_delay=0.01,
    )
    task = asyncio.create_task(reconciler.run(queue, deletions, stop))

    yield Harness(cluster, owner_cache, queue, deletions, children, stacks, reconciler)

    stop.set()
    await queue.close()
    await asyncio.wait_for(task, timeout=5)
    await stacks.stop()
    await children.stop()
