"""Tests for the application lifecycle."""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, MagicMock

import kubernetes_asyncio.config as k8s_config
import pytest

from kubestack.app import KubeStackApp, _ComponentError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("KUBESTACK_"):
            monkeypatch.delenv(key)


class TestLifecycle:
    async def test_stop_before_start_is_noop(self) -> None:
        app = KubeStackApp()
        await app.stop()
        assert not app.running

    async def test_missing_cluster_config_is_fatal(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            k8s_config, "load_incluster_config", MagicMock(side_effect=k8s_config.ConfigException("no account"))
        )
        monkeypatch.setattr(
            k8s_config, "load_kube_config", AsyncMock(side_effect=k8s_config.ConfigException("no kubeconfig"))
        )
        app = KubeStackApp()
        with pytest.raises(_ComponentError) as exc_info:
            await app.start()
        assert exc_info.value.component == "k8s_client"
        assert "no kubeconfig" in str(exc_info.value)
        assert not app.running
        await app.stop()

    async def test_invalid_config_fails_before_anything_starts(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBESTACK_DEFAULT_SERVICE_TYPE", "ExternalName")
        app = KubeStackApp()
        with pytest.raises(ValueError):
            await app.start()
        assert app.config is None


class TestStartupInterrupted:
    async def test_stop_during_children_sync(self, monkeypatch: pytest.MonkeyPatch) -> None:
        import kubestack.controller as controller
        import kubestack.kube.client as kube_client
        from kubestack.app import _StartupInterrupted
        from kubestack.config import load_config
        from kubestack.controller import OwnerCache
        from kubestack.observability.logging import get_logger
        from kubestack.workqueue import DedupQueue

        listener = AsyncMock()
        listener.start_and_wait_for_full_sync.return_value = False
        monkeypatch.setattr(controller, "ChildrenListener", MagicMock(return_value=listener))
        monkeypatch.setattr(kube_client, "KubeResourceClient", MagicMock())

        app = KubeStackApp()
        app.config = load_config()
        app._log = get_logger("app")
        app._api_client = MagicMock()
        app._reconcile_queue = DedupQueue(16)
        app._owner_cache = OwnerCache()
        app.request_stop()

        with pytest.raises(_StartupInterrupted) as exc_info:
            await app._start_children_listener()
        assert exc_info.value.component == "children_listener"
        assert not app.running

    async def test_main_exits_cleanly(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from kubestack.app import _StartupInterrupted, main

        stop = AsyncMock()
        monkeypatch.setattr(KubeStackApp, "start", AsyncMock(side_effect=_StartupInterrupted("children_listener")))
        monkeypatch.setattr(KubeStackApp, "stop", stop)

        await main()

        stop.assert_awaited()

    async def test_main_exits_with_failure_on_component_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from kubestack.app import main

        stop = AsyncMock()
        error = _ComponentError("k8s_client", RuntimeError("no cluster"))
        monkeypatch.setattr(KubeStackApp, "start", AsyncMock(side_effect=error))
        monkeypatch.setattr(KubeStackApp, "stop", stop)

        with pytest.raises(SystemExit) as exc_info:
            await main()
        assert exc_info.value.code == 1
        stop.assert_awaited()
