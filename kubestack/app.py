"""Application bootstrap for kubestack.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → queues → owner cache
              → children listener (full sync) → stack listener → reconciler
              → REST

Shutdown stops components in reverse startup order. Each component's stop
error is caught and logged independently so that one failure does not keep
the rest from shutting down.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from kubestack.config import load_config
from kubestack.errors import StackValidationError, SyncError
from kubestack.models.config import KubeStackConfig
from kubestack.models.stack import Stack
from kubestack.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog
    from kubernetes_asyncio.client import ApiClient

    from kubestack.controller import ChildrenListener, OwnerCache, StackListener, StackReconciler
    from kubestack.conversions.base import StackConverter
    from kubestack.kube.client import StackClient
    from kubestack.workqueue import DedupQueue

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class _StartupInterrupted(Exception):
    """Shutdown was requested before startup completed."""

    def __init__(self, component: str) -> None:
        super().__init__(f"stopped while starting {component}")
        self.component = component


class KubeStackApp:
    """Application root. Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started, or already stopped,
    is safe.
    """

    def __init__(self) -> None:
        self.config: KubeStackConfig | None = None

        self._api_client: ApiClient | None = None
        self._stack_client: StackClient | None = None
        self._converter: StackConverter | None = None
        self._reconcile_queue: DedupQueue | None = None
        self._deletions: asyncio.Queue[Stack] | None = None
        self._owner_cache: OwnerCache | None = None
        self._children: ChildrenListener | None = None
        self._stacks: StackListener | None = None
        self._reconciler: StackReconciler | None = None
        self._rest_server: object | None = None

        self._stop_event = asyncio.Event()
        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    def request_stop(self) -> None:
        """Interrupt a pending startup sync and let the reconciler wind down."""
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start and
        _StartupInterrupted if ``request_stop()`` is called before the
        children listener has synced.
        """
        # --- 1. Configuration -------------------------------------------
        self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info(
            "kubestack starting",
            version=_kubestack_version(),
            namespace=self.config.controller.namespace or "*",
            stack_api_version=self.config.controller.stack_api_version,
        )

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Queues ----------------------------------------------------
        self._start_queues()

        # --- 5. Owner cache -----------------------------------------------
        await self._start_owner_cache()

        # --- 6. Children listener, fully synced before anything reconciles
        await self._start_children_listener()

        # --- 7. Stack listener ----------------------------------------------
        self._start_stack_listener()

        # --- 8. Reconciler --------------------------------------------------
        self._start_reconciler()

        # --- 9. REST API ----------------------------------------------------
        await self._start_rest()

        self._running = True
        self._log.info("kubestack started", port=self.config.api.port)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config
            from kubernetes_asyncio import client as k8s_client

            from kubestack.conversions import converter_for
            from kubestack.kube.client import StackClient

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
            self._stack_client = StackClient(self._api_client, self.config.controller.stack_api_version)
            self._converter = converter_for(self.config.controller.stack_api_version)
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    def _start_queues(self) -> None:
        assert self.config is not None
        from kubestack.workqueue import DedupQueue

        self._reconcile_queue = DedupQueue(self.config.queues.reconcile_queue_length, name="reconcile")
        self._deletions = asyncio.Queue(maxsize=self.config.queues.deletion_channel_size)

    async def _start_owner_cache(self) -> None:
        """Seed the owner cache with the uids of every existing stack."""
        assert self._log is not None
        assert self.config is not None
        assert self._stack_client is not None
        assert self._converter is not None
        self._log.debug("starting owner cache")
        try:
            from kubestack.controller import OwnerCache

            items, _ = await self._stack_client.list(self.config.controller.namespace)
            stacks = []
            for raw in items:
                try:
                    stacks.append(self._converter.to_canonical(raw))
                except StackValidationError as exc:
                    if exc.stack is not None:
                        stacks.append(exc.stack)
            cache = OwnerCache()
            cache.refresh(stacks)
            self._owner_cache = cache
            self._log.info("owner cache started", stacks=len(stacks))
        except Exception as exc:
            raise _ComponentError("owner_cache", exc) from exc

    async def _start_children_listener(self) -> None:
        """Watch all child kinds and block until every one has listed once.

        A sync that times out is fatal.
        """
        assert self._log is not None
        assert self.config is not None
        assert self._api_client is not None
        assert self._reconcile_queue is not None
        assert self._owner_cache is not None
        self._log.debug("starting children listener")
        from kubestack.controller import ChildrenListener
        from kubestack.kube.client import MANAGED_KINDS, KubeResourceClient

        clients = [KubeResourceClient(self._api_client, kind) for kind in MANAGED_KINDS]
        children = ChildrenListener(
            clients,
            self._reconcile_queue,
            self._owner_cache,
            namespace=self.config.controller.namespace,
            resync_interval=self.config.controller.reconciliation_interval_seconds,
        )
        self._children = children
        timeout = self.config.controller.sync_timeout_seconds
        try:
            synced = await asyncio.wait_for(children.start_and_wait_for_full_sync(self._stop_event), timeout)
        except TimeoutError as exc:
            raise _ComponentError("children_listener", SyncError(f"not synced after {timeout}s")) from exc
        if not synced:
            raise _StartupInterrupted("children_listener")
        self._log.info("children listener started", kinds=children.kinds)

    def _start_stack_listener(self) -> None:
        # started without waiting for its initial list
        assert self._log is not None
        assert self.config is not None
        assert self._stack_client is not None
        assert self._converter is not None
        assert self._reconcile_queue is not None
        assert self._deletions is not None
        assert self._owner_cache is not None
        from kubestack.controller import StackListener

        stacks = StackListener(
            self._stack_client,
            self._converter,
            self._reconcile_queue,
            self._deletions,
            self._owner_cache,
            namespace=self.config.controller.namespace,
            resync_interval=self.config.controller.reconciliation_interval_seconds,
        )
        stacks.start()
        self._stacks = stacks
        self._log.info("stack listener started")

    def _start_reconciler(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._api_client is not None
        assert self._stack_client is not None
        assert self._converter is not None
        assert self._stacks is not None
        assert self._children is not None
        assert self._owner_cache is not None
        assert self._reconcile_queue is not None
        assert self._deletions is not None
        from kubestack.controller import ResourceUpdater, StackReconciler
        from kubestack.convert import service_strategy_for
        from kubestack.kube.client import MANAGED_KINDS, KubeResourceClient
        from kubestack.rollout import RevisionRecorder

        updater = ResourceUpdater(
            {kind: KubeResourceClient(self._api_client, kind) for kind in MANAGED_KINDS},
            self._stack_client,
            self._converter,
        )
        reconciler = StackReconciler(
            self._stacks,
            self._children,
            updater,
            self._owner_cache,
            RevisionRecorder(self._stack_client),
            service_strategy_for(self.config.controller.default_service_type),
            retry_delay=self.config.queues.retry_delay_seconds,
            retry_capacity=self.config.queues.retry_queue_length,
        )
        task = asyncio.create_task(
            reconciler.run(self._reconcile_queue, self._deletions, self._stop_event), name="reconciler"
        )
        self._background_tasks.append(task)
        self._reconciler = reconciler
        self._log.info("reconciler started", service_type=self.config.controller.default_service_type)

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server unless disabled with port 0."""
        assert self._log is not None
        assert self.config is not None
        if self.config.api.port == 0:
            self._log.info("rest api disabled")
            return
        self._log.debug("starting rest api")
        try:
            import uvicorn

            from kubestack.api import create_app

            fastapi_app = create_app(
                stacks=self._stacks,
                children=self._children,
                stack_client=self._stack_client,
                history_limit=self.config.revisions.history_limit,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",  # noqa: S104
                port=self.config.api.port,
                log_config=None,
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest api started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("kubestack shutting down")
        self._running = False
        self._stop_event.set()

        if self._rest_server is not None:
            self._rest_server.should_exit = True  # type: ignore[attr-defined]
        if self._reconcile_queue is not None:
            await self._reconcile_queue.close()

        if self._background_tasks:
            _, pending = await asyncio.wait(self._background_tasks, timeout=_SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                log.warning("component stop timed out", task=task.get_name(), timeout=_SHUTDOWN_GRACE_SECONDS)
                task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self._stop_component("stack_listener", self._stacks)
        await self._stop_component("children_listener", self._children)
        await self._stop_k8s_client()

        log.info("kubestack stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            await asyncio.wait_for(stop_fn(), timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._api_client = None


def _kubestack_version() -> str:
    from kubestack import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = KubeStackApp()
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    def _on_signal() -> None:
        shutdown.set()
        app.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _on_signal)

    try:
        await app.start()
        await shutdown.wait()
    except _StartupInterrupted as exc:
        get_logger("app").info("shutdown requested during startup", component=exc.component)
        await app.stop()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical("fatal startup error", component=exc.component, error=str(exc.cause))
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
