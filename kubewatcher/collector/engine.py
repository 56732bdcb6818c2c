"""Watch session engine: one independent session task per resource filter.

Sessions share nothing but the admission gate and the diagnostics
registry.  :meth:`WatchEngine.stop` is the process-wide shutdown signal:
it closes the gate so no new session is admitted, cancels every session
task (which unwinds at its current await and closes any open stream), and
waits for them to finish.

Lifecycle::

    engine = WatchEngine(filters, KubernetesSource(), dispatcher.deliver)
    await engine.start()
    # ... runs until stop()
    await engine.stop()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from kubewatcher.collector.gate import AdmissionGate
from kubewatcher.collector.registry import SessionRegistry
from kubewatcher.collector.session import DeliverFn, WatchSession
from kubewatcher.collector.source import ResourceSource
from kubewatcher.models.config import WatcherConfig
from kubewatcher.models.resources import ResourceFilter
from kubewatcher.models.session import SessionStateView
from kubewatcher.observability.logging import get_logger

_log = get_logger("collector.engine")


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class WatchEngine:
    """Owns every :class:`WatchSession` and coordinates their lifecycle."""

    def __init__(
        self,
        filters: Iterable[ResourceFilter],
        source: ResourceSource,
        deliver: DeliverFn,
        config: WatcherConfig | None = None,
        cluster_name: str = "",
        registry: SessionRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._filters = list(dict.fromkeys(filters))
        self._source = source
        self._deliver = deliver
        self._config = config or WatcherConfig()
        self._cluster_name = cluster_name
        self._clock = clock
        self._sleep = sleep
        self.registry = registry or SessionRegistry()

        self._gate = AdmissionGate(self._config.max_concurrent_snapshots)
        self._sessions: dict[str, WatchSession] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def sessions(self) -> dict[str, WatchSession]:
        return dict(self._sessions)

    @property
    def gate(self) -> AdmissionGate:
        return self._gate

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn one session task per filter.  Idempotent."""
        if self._running:
            return
        self._running = True
        for resource_filter in self._filters:
            label = resource_filter.label
            session = WatchSession(
                resource_filter,
                self._source,
                self._deliver,
                config=self._config,
                cluster_name=self._cluster_name,
                gate=self._gate,
                registry=self.registry,
                clock=self._clock,
                sleep=self._sleep,
            )
            task = asyncio.create_task(session.run(), name=f"session-{label}")
            task.add_done_callback(self._on_session_done)
            self._sessions[label] = session
            self._tasks[label] = task
        _log.info(
            "engine_started",
            sessions=len(self._tasks),
            admission_capacity=self._gate.capacity,
        )

    async def stop(self) -> None:
        """Cancel every session and wait for them to unwind."""
        if not self._running:
            return
        self._running = False
        self._gate.close()

        tasks = list(self._tasks.values())
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._sessions.clear()
        self.registry.clear()
        _log.info("engine_stopped")

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def session_states(self) -> dict[str, SessionStateView]:
        """Point-in-time copy of every session's state, keyed by filter label."""
        return self.registry.snapshot()

    def _on_session_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error("session_crashed", task=task.get_name(), error=str(exc))
