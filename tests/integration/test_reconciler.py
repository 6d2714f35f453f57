"""End-to-end reconciliation against the in-memory cluster."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from kubernetes_asyncio.client import ApiException

from kubestack.controller import OwnerCache, StackReconciler
from kubestack.convert import LoadBalancerServiceStrategy
from kubestack.models.stack import KIND, Stack
from kubestack.stackresources.state import DEPLOYMENT, SECRET, SERVICE, STATEFUL_SET
from kubestack.workqueue.dedup import DedupQueue

from fakecluster import Harness, make_stack_raw, wait_until

pytestmark = pytest.mark.integration

_FRONT = {"name": "front", "image": "nginx:1.25", "ports": [{"target": 80, "published": 8080}]}
_BACK = {"name": "back", "image": "redis:7"}


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


class TestConvergence:
    async def test_new_stack_gets_children_and_becomes_available(self, harness: Harness) -> None:
        cluster = harness.cluster
        stack = cluster.add(KIND, make_stack_raw("app", [_FRONT]))

        await wait_until(lambda: cluster.get(DEPLOYMENT, "default/front") is not None)
        await wait_until(lambda: harness.phase("default/app") == "Progressing")

        dep = cluster.get(DEPLOYMENT, "default/front")
        assert dep is not None
        assert dep["metadata"]["ownerReferences"] == [
            {
                "apiVersion": "kubestack.io/v1alpha3",
                "kind": "Stack",
                "name": "app",
                "uid": stack["metadata"]["uid"],
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
        await wait_until(lambda: cluster.get(SERVICE, "default/front-published") is not None)
        assert cluster.get(SERVICE, "default/front") is not None
        assert harness.stack_status("default/app")["message"] == "Stack is starting"

        cluster.set_status(DEPLOYMENT, "default/front", {"replicas": 1, "readyReplicas": 1})
        await wait_until(lambda: harness.phase("default/app") == "Available")
        assert harness.stack_status("default/app")["message"] == "Stack is started"

    async def test_spec_revision_recorded(self, harness: Harness) -> None:
        cluster = harness.cluster
        cluster.add(KIND, make_stack_raw("app", [_FRONT]))

        def annotations() -> dict[str, str]:
            obj = cluster.get(KIND, "default/app") or {}
            return obj.get("metadata", {}).get("annotations") or {}

        await wait_until(lambda: "kubestack.io/revision-1" in annotations())
        cluster.mutate(KIND, "default/app", lambda obj: obj["spec"]["services"].append(dict(_BACK)))
        await wait_until(lambda: "kubestack.io/revision-2" in annotations())
        assert '"back"' in annotations()["kubestack.io/revision-2"]
        assert '"back"' not in annotations()["kubestack.io/revision-1"]

    async def test_removed_service_children_deleted(self, harness: Harness) -> None:
        cluster = harness.cluster
        cluster.add(KIND, make_stack_raw("app", [_FRONT, _BACK]))
        await wait_until(lambda: cluster.get(DEPLOYMENT, "default/back") is not None)
        await wait_until(lambda: len(harness.children.current_state("default/app")) == 5)
        front_rv = cluster.get(DEPLOYMENT, "default/front")["metadata"]["resourceVersion"]  # type: ignore[index]

        cluster.mutate(KIND, "default/app", lambda obj: obj["spec"].__setitem__("services", [dict(_FRONT)]))

        await wait_until(lambda: cluster.get(DEPLOYMENT, "default/back") is None)
        await wait_until(lambda: cluster.get(SERVICE, "default/back") is None)
        front = cluster.get(DEPLOYMENT, "default/front")
        assert front is not None
        assert front["metadata"]["resourceVersion"] == front_rv

    async def test_replica_change_scales_in_place(self, harness: Harness) -> None:
        cluster = harness.cluster
        cluster.add(KIND, make_stack_raw("app", [_BACK]))
        await wait_until(lambda: len(harness.children.current_state("default/app")) == 2)
        uid = cluster.get(DEPLOYMENT, "default/back")["metadata"]["uid"]  # type: ignore[index]
        writes_before = len(cluster.writes)

        def scale(obj: dict) -> None:
            obj["spec"]["services"][0]["deploy"] = {"replicas": 3}

        cluster.mutate(KIND, "default/app", scale)
        await wait_until(
            lambda: cluster.get(DEPLOYMENT, "default/back")["spec"]["replicas"] == 3  # type: ignore[index]
        )
        deployment_writes = {w for w in cluster.writes[writes_before:] if w[0] == DEPLOYMENT}
        assert deployment_writes == {(DEPLOYMENT, "MODIFIED", "default/back")}
        assert cluster.get(DEPLOYMENT, "default/back")["metadata"]["uid"] == uid  # type: ignore[index]

    async def test_persistent_volume_service_becomes_stateful_set(self, harness: Harness) -> None:
        cluster = harness.cluster
        db = {"name": "db", "image": "postgres:16", "volumes": [{"type": "volume", "source": "data", "target": "/d"}]}
        cluster.add(KIND, make_stack_raw("app", [db]))
        await wait_until(lambda: cluster.get(STATEFUL_SET, "default/db") is not None)
        assert cluster.get(DEPLOYMENT, "default/db") is None


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_invalid_stack_reports_failure(self, harness: Harness) -> None:
        harness.cluster.add(KIND, make_stack_raw("empty", []))
        await wait_until(lambda: harness.phase("default/empty") == "Failure")
        assert harness.stack_status("default/empty")["message"] == "this stack has no service"

    async def test_undecodable_stack_reports_failure(self, harness: Harness) -> None:
        harness.cluster.add(KIND, make_stack_raw("broken", [{"image": "nginx"}]))
        await wait_until(lambda: harness.phase("default/broken") == "Failure")
        assert "no name" in harness.stack_status("default/broken")["message"]

    async def test_name_clash_with_other_stack(self, harness: Harness) -> None:
        cluster = harness.cluster
        cluster.add(KIND, make_stack_raw("app", [_FRONT]))
        await wait_until(lambda: len(harness.children.current_state("default/app")) == 3)
        before = cluster.get(DEPLOYMENT, "default/front")

        cluster.add(KIND, make_stack_raw("app2", [_FRONT]))
        await wait_until(lambda: harness.phase("default/app2") == "Failure")

        assert "already exists" in harness.stack_status("default/app2")["message"]
        assert cluster.get(DEPLOYMENT, "default/front") == before
        assert harness.owner_cache.owner_of_ref(DEPLOYMENT, "default", "front") == "default/app"

    async def test_clash_resolves_once_other_stack_is_gone(self, harness: Harness) -> None:
        cluster = harness.cluster
        cluster.add(KIND, make_stack_raw("app", [_FRONT]))
        await wait_until(lambda: len(harness.children.current_state("default/app")) == 3)
        cluster.add(KIND, make_stack_raw("app2", [_FRONT]))
        await wait_until(lambda: harness.phase("default/app2") == "Failure")

        cluster.remove(KIND, "default/app")

        await wait_until(lambda: harness.owner_cache.owner_of_ref(DEPLOYMENT, "default", "front") == "default/app2")
        await wait_until(lambda: harness.phase("default/app2") == "Progressing")
        cluster.set_status(DEPLOYMENT, "default/front", {"replicas": 1, "readyReplicas": 1})
        await wait_until(lambda: harness.phase("default/app2") == "Available")


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


class TestRetries:
    async def test_connection_error_on_create(self, harness: Harness) -> None:
        cluster = harness.cluster
        cluster.fail_next(DEPLOYMENT, "create", aiohttp.ClientConnectionError("connection reset"))

        cluster.add(KIND, make_stack_raw("app", [_FRONT]))

        await wait_until(lambda: cluster.get(DEPLOYMENT, "default/front") is not None)
        await wait_until(lambda: harness.phase("default/app") == "Progressing")
        assert harness.stack_status("default/app")["message"] == "Stack is starting"

    @pytest.mark.parametrize("status", [409, 503])
    async def test_rejected_update_is_retried(self, harness: Harness, status: int) -> None:
        cluster = harness.cluster
        cluster.add(KIND, make_stack_raw("app", [_FRONT]))
        await wait_until(lambda: cluster.get(DEPLOYMENT, "default/front") is not None)
        cluster.fail_next(DEPLOYMENT, "replace", ApiException(status=status, reason="Rejected"))

        cluster.mutate(KIND, "default/app", lambda obj: obj["spec"]["services"][0].__setitem__("image", "nginx:1.26"))

        def image() -> str:
            dep = cluster.get(DEPLOYMENT, "default/front") or {}
            return str(dep.get("spec", {}).get("template", {}).get("spec", {}).get("containers", [{}])[0].get("image"))

        await wait_until(lambda: image() == "nginx:1.26")
        await wait_until(lambda: harness.phase("default/app") == "Progressing")

    async def test_status_write_survives_server_disconnect(self, harness: Harness) -> None:
        cluster = harness.cluster
        cluster.fail_next(KIND, "replace_status", aiohttp.ServerDisconnectedError())

        cluster.add(KIND, make_stack_raw("app", [_FRONT]))

        await wait_until(lambda: harness.phase("default/app") == "Progressing")


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeletion:
    async def test_deleted_stack_children_removed(self, harness: Harness) -> None:
        cluster = harness.cluster
        raw = make_stack_raw(
            "app",
            [{**_BACK, "secrets": [{"source": "token"}]}],
            secrets={"token": {"file": "token.txt", "data": "s3cret"}},
        )
        cluster.add(KIND, raw)
        await wait_until(lambda: len(harness.children.current_state("default/app")) == 3)
        assert cluster.get(SECRET, "default/token") is not None

        cluster.remove(KIND, "default/app")

        await wait_until(lambda: cluster.get(DEPLOYMENT, "default/back") is None)
        await wait_until(lambda: cluster.get(SECRET, "default/token") is None)
        assert cluster.get(SERVICE, "default/back") is None
        await wait_until(lambda: harness.owner_cache.owners() == [])

    async def test_secret_cleanup_retried_after_server_error(self, harness: Harness) -> None:
        cluster = harness.cluster
        raw = make_stack_raw(
            "app",
            [{**_BACK, "secrets": [{"source": "token"}]}],
            secrets={"token": {"file": "token.txt", "data": "s3cret"}},
        )
        cluster.add(KIND, raw)
        await wait_until(lambda: len(harness.children.current_state("default/app")) == 3)
        cluster.fail_next(SECRET, "delete_collection", ApiException(status=503, reason="Service Unavailable"))

        cluster.remove(KIND, "default/app")

        await wait_until(lambda: cluster.get(SECRET, "default/token") is None)
        assert cluster.get(DEPLOYMENT, "default/back") is None

    async def test_deletion_served_before_backlog(self) -> None:
        stacks = MagicMock()
        children = MagicMock()
        reconciler = StackReconciler(
            stacks, children, MagicMock(), OwnerCache(), MagicMock(), LoadBalancerServiceStrategy()
        )
        queue = DedupQueue(20)
        deletions: asyncio.Queue[Stack] = asyncio.Queue(5)
        stop = asyncio.Event()
        handled: list[tuple[str, int]] = []

        async def reconcile(key: str) -> None:
            handled.append((key, len(queue)))
            if len(handled) == 11:
                stop.set()

        async def handle_deletion(stack: Stack) -> None:
            handled.append((f"deleted:{stack.key}", len(queue)))

        reconciler.reconcile = AsyncMock(side_effect=reconcile)  # type: ignore[method-assign]
        reconciler._handle_deletion = AsyncMock(side_effect=handle_deletion)  # type: ignore[method-assign]

        for i in range(10):
            await queue.submit(f"default/busy-{i}")
        await deletions.put(Stack(namespace="default", name="gone"))

        await asyncio.wait_for(reconciler.run(queue, deletions, stop), timeout=5)

        key, backlog = handled[0]
        assert key == "deleted:default/gone"
        assert backlog >= 9
        assert [k for k, _ in handled[1:]] == [f"default/busy-{i}" for i in range(10)]
