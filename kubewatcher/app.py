"""Application bootstrap for kubewatcher.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config -> logging -> K8s client -> source -> notifications
              -> watch engine -> REST

Shutdown is graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single component failure does not prevent the rest from shutting down.
"""

from __future__ import annotations

import asyncio
import os
import signal
from typing import TYPE_CHECKING

from kubewatcher.config import ConfigError, load_config
from kubewatcher.models.config import AppConfig
from kubewatcher.models.events import ChangeEvent
from kubewatcher.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from kubewatcher.collector.engine import WatchEngine
    from kubewatcher.collector.source import KubernetesSource
    from kubewatcher.notifications import NotificationDispatcher

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class WatcherApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.
    """

    def __init__(self, config_path: str | os.PathLike[str] | None = None) -> None:
        self._config_path = config_path
        self.config: AppConfig | None = None

        self._source: KubernetesSource | None = None
        self._notifications: NotificationDispatcher | None = None
        self._engine: WatchEngine | None = None
        self._rest_server: object | None = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def engine(self) -> WatchEngine | None:
        return self._engine

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        The caller (main()) turns this into a non-zero exit.
        """
        # --- 1. Configuration -------------------------------------------
        try:
            self.config = load_config(self._config_path)
        except ConfigError as exc:
            raise _ComponentError("config", exc) from exc

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level, self.config.log.format)
        self._log = get_logger("app")
        self._log.info(
            "kubewatcher_starting",
            version=_kubewatcher_version(),
            cluster=self.config.cluster_name,
            filters=[r.label for r in self.config.resources],
        )

        # --- 3. Kubernetes client + source ------------------------------
        await self._start_source()

        # --- 4. Notification dispatcher ---------------------------------
        await self._start_notifications()

        # --- 5. Watch session engine ------------------------------------
        await self._start_engine()

        # --- 6. REST API ------------------------------------------------
        await self._start_rest()

        self._running = True
        self._log.info("kubewatcher_started", port=self.config.api.port)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_source(self) -> None:
        """Configure kubernetes-asyncio from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting_k8s_client")
        try:
            import kubernetes_asyncio.config as k8s_config
            from kubernetes_asyncio import client as k8s_client

            from kubewatcher.collector.source import KubernetesSource

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s_client_configured", source="in-cluster")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s_client_configured", source="kubeconfig")

            self._source = KubernetesSource(k8s_client.ApiClient())
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_notifications(self) -> None:
        assert self._log is not None
        assert self.config is not None
        try:
            from kubewatcher.notifications import build_notification_dispatcher

            self._notifications = build_notification_dispatcher(self.config)
            self._log.info("notifications_started", channels=len(self._notifications.channels))
        except Exception as exc:
            # Non-fatal: changes are still logged, just not delivered.
            self._log.warning("notifications_failed_to_start", error=str(exc))
            self._notifications = None

    async def _start_engine(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._source is not None
        try:
            from kubewatcher.collector.engine import WatchEngine

            deliver = self._notifications.deliver if self._notifications is not None else _log_only
            self._engine = WatchEngine(
                self.config.resources,
                self._source,
                deliver,
                config=self.config.watcher,
                cluster_name=self.config.cluster_name,
            )
            await self._engine.start()
        except Exception as exc:
            raise _ComponentError("engine", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn server for probes, metrics and diagnostics."""
        assert self._log is not None
        assert self.config is not None
        assert self._engine is not None
        if not self.config.api.enabled:
            self._log.info("rest_api_disabled")
            return
        try:
            import uvicorn

            from kubewatcher.api import build_app

            engine = self._engine
            fastapi_app = build_app(
                registry=engine.registry,
                ready_fn=lambda: engine.running,
                cluster_name=self.config.cluster_name,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest_api_started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("kubewatcher_shutting_down")

        self._running = False

        if self._rest_server is not None:
            self._rest_server.should_exit = True  # type: ignore[attr-defined]
        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
        self._rest_server = None

        await self._stop_component("engine", self._engine)
        await self._stop_component("notifications", self._notifications)
        await self._stop_component("k8s_client", self._source, method="close")
        self._engine = None
        self._notifications = None
        self._source = None
        self._log = None

        log.info("kubewatcher_stopped")

    async def _stop_component(self, name: str, component: object | None, method: str = "stop") -> None:
        """Call *method* on a component if it has it, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, method, None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component_stop_timed_out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component_stop_failed", component=name, error=str(exc))


def _log_only(event: ChangeEvent) -> None:
    get_logger("app").info(
        "change_event_unrouted",
        resource=event.resource,
        type=event.type.value,
        actor=event.actor,
    )


def _kubewatcher_version() -> str:
    from kubewatcher import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config_path: str | os.PathLike[str] | None = None) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = WatcherApp(config_path)
    loop = asyncio.get_running_loop()

    shutdown_task: asyncio.Task[None] | None = None

    def _request_shutdown() -> None:
        nonlocal shutdown_task
        if shutdown_task is not None:
            return
        shutdown_task = asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app.running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal_startup_error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if shutdown_task is not None:
            await shutdown_task
        elif app.running:
            await app.stop()
