"""Watch session: the per-filter reconnect state machine.

Lifecycle::

    LOADING_SNAPSHOT -> STARTUP_DELAY -> WATCHING -> (ERROR | STREAM_ENDED)
        -> BACKOFF_OR_RESET -> WATCHING ...        (retry, same checkpoint)
        -> BACKOFF_OR_RESET -> LOADING_SNAPSHOT    (hard reset)
    any state -> STOPPED                           (cancellation)

One asyncio task drives the whole machine, so the session's state,
snapshot map, and dedup window are never touched concurrently.  Every
wait (admission, page fetch, back-off, startup delay, stream read) is a
plain ``await`` and therefore returns promptly when the task is cancelled.

Recovery rules:

- a stale checkpoint (410 / "too old" / "expired") clears the checkpoint,
  snapshot map, and dedup window and reloads after a short fixed delay;
- any other failure retries the watch from the unchanged checkpoint after
  ``max(exponential(consecutive_failures), linear(reconnect_count))``;
- more than ``max_reconnects`` reconnects without a healthy connection in
  between forces the hard reset path with a longer cooldown.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from kubewatcher.collector.backoff import ExponentialBackoff, linear_reconnect_delay
from kubewatcher.collector.classifier import EventClassifier
from kubewatcher.collector.dedup import DedupWindow
from kubewatcher.collector.gate import AdmissionGate
from kubewatcher.collector.health import HealthGovernor
from kubewatcher.collector.registry import SessionRegistry
from kubewatcher.collector.snapshot import SnapshotLoader, SnapshotLoadError
from kubewatcher.collector.source import ResourceSource, is_stale_resource_version
from kubewatcher.models.config import WatcherConfig
from kubewatcher.models.events import ChangeEvent
from kubewatcher.models.resources import ResourceFilter
from kubewatcher.models.session import SessionPhase, SessionState
from kubewatcher.observability.logging import get_logger
from kubewatcher.observability.metrics import (
    hard_resets_total,
    watch_errors_total,
    watch_reconnects_total,
)

DeliverFn = Callable[[ChangeEvent], Any]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class _StreamOutcome:
    """How one WATCHING period ended."""

    traffic: int = 0
    error: BaseException | None = None
    stale_connection: bool = False


class WatchSession:
    """Runs the snapshot + watch loop for a single :class:`ResourceFilter`.

    Args:
        resource_filter: What to watch.
        source: Control-plane adapter.
        deliver: Called synchronously with every ChangeEvent.  Must not
            block; failures are logged and never affect the watch.
        config: Engine tunables.
        cluster_name: Stamped onto every ChangeEvent.
        gate: Optional admission gate shared by all sessions.
        registry: Optional diagnostics registry.
        clock: Returns the current UTC time (injectable for tests).
        sleep: Awaitable sleep (injectable for tests).
    """

    def __init__(
        self,
        resource_filter: ResourceFilter,
        source: ResourceSource,
        deliver: DeliverFn,
        config: WatcherConfig | None = None,
        cluster_name: str = "",
        gate: AdmissionGate | None = None,
        registry: SessionRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._filter = resource_filter
        self._source = source
        self._deliver = deliver
        self._config = config or WatcherConfig()
        self._gate = gate
        self._registry = registry
        self._clock = clock
        self._sleep = sleep
        self._label = resource_filter.label
        self._log = get_logger("collector.session").bind(filter=self._label)

        cfg = self._config
        self.state = SessionState(filter=resource_filter)
        self.dedup = DedupWindow(timedelta(seconds=cfg.event_dedup_window_seconds), clock=clock)
        self._classifier = EventClassifier(
            resource_filter,
            self.state,
            self.dedup,
            cluster_name=cluster_name,
            catch_up_grace=timedelta(seconds=cfg.catch_up_grace_seconds),
            clock=clock,
        )
        self._loader = SnapshotLoader(
            source,
            page_size=cfg.snapshot_page_size,
            page_timeout_s=cfg.page_timeout_seconds,
            backoff=ExponentialBackoff(steps=cfg.snapshot_retry_steps),
            clock=clock,
            sleep=sleep,
        )
        self._health = HealthGovernor(
            self.state,
            self.dedup,
            heartbeat_interval_s=cfg.heartbeat_interval_seconds,
            keep_alive=cfg.keep_alive_enabled,
            snapshot_ttl=timedelta(hours=cfg.snapshot_ttl_hours),
            on_stale=self.request_reconnect,
            clock=clock,
            sleep=sleep,
        )
        self._error_backoff = ExponentialBackoff()
        self._reconnect_requested = asyncio.Event()
        self._holding_slot = False

    @property
    def resource_filter(self) -> ResourceFilter:
        return self._filter

    @property
    def health(self) -> HealthGovernor:
        return self._health

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until cancelled, or until the snapshot retry budget is exhausted."""
        if self._gate is not None:
            if not await self._gate.acquire(self._config.startup_deadline_seconds):
                self._log.error("session_not_admitted", deadline_s=self._config.startup_deadline_seconds)
                self._set_phase(SessionPhase.STOPPED)
                return
            self._holding_slot = True

        if self._registry is not None:
            self._registry.register(self.state)
        self._health.start()
        self._log.info("session_started")
        try:
            await self._run_state_machine()
        except asyncio.CancelledError:
            self._log.info("session_cancelled", phase=self.state.phase.value)
            raise
        except SnapshotLoadError as exc:
            self.state.last_error = str(exc)
            self._log.error("session_failed", error=str(exc), attempts=exc.attempts)
        finally:
            self._set_phase(SessionPhase.STOPPED)
            self._release_slot()
            await self._health.stop()
            self._log.info("session_stopped")

    def request_reconnect(self) -> None:
        """Ask the session to close its current stream and reopen it."""
        self._reconnect_requested.set()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run_state_machine(self) -> None:
        phase = SessionPhase.LOADING_SNAPSHOT
        while True:
            if phase is SessionPhase.LOADING_SNAPSHOT:
                if not await self._ensure_slot():
                    return
                await self._load_snapshot()
                phase = SessionPhase.STARTUP_DELAY
            elif phase is SessionPhase.STARTUP_DELAY:
                self._set_phase(SessionPhase.STARTUP_DELAY)
                await self._sleep(self._config.startup_delay_seconds)
                phase = SessionPhase.WATCHING
            else:
                outcome = await self._watch_once()
                phase = await self._recover(outcome)

    async def _load_snapshot(self) -> None:
        self._set_phase(SessionPhase.LOADING_SNAPSHOT)
        snapshot = await self._loader.load(self._filter)
        state = self.state
        state.checkpoint.resource_version = snapshot.resource_version
        state.checkpoint.snapshot = snapshot.entries
        state.initialized_at = self._clock()
        state.watch_started_at = None

    async def _watch_once(self) -> _StreamOutcome:
        state = self.state
        self._reconnect_requested.clear()
        self._set_phase(SessionPhase.WATCHING)

        now = self._clock()
        if state.watch_started_at is None:
            state.watch_started_at = now
        # Seeds the watchdog; health is only reported once traffic arrives.
        state.last_heartbeat = now
        if self._config.release_admission_on_watch:
            self._release_slot()

        outcome = _StreamOutcome()
        consume = asyncio.create_task(self._consume(outcome), name=f"stream-{self._label}")
        stalled = asyncio.create_task(self._reconnect_requested.wait(), name=f"stall-{self._label}")
        try:
            done, _ = await asyncio.wait({consume, stalled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (consume, stalled):
                if not task.done():
                    task.cancel()
            await asyncio.gather(consume, stalled, return_exceptions=True)

        if consume in done:
            outcome.error = consume.exception()
        else:
            outcome.stale_connection = True
        return outcome

    async def _consume(self, outcome: _StreamOutcome) -> None:
        """Read the stream until it ends, classifying events in delivery order."""
        state = self.state
        stream = self._source.watch(
            self._filter,
            state.checkpoint.resource_version,
            self._config.watch_timeout_seconds,
        )
        self._log.debug("watch_opened", resource_version=state.checkpoint.resource_version)
        try:
            async for raw_event in stream:
                outcome.traffic += 1
                change = self._classifier.classify(raw_event)
                if change is not None:
                    self._dispatch(change)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _recover(self, outcome: _StreamOutcome) -> SessionPhase:
        """Classify how the stream ended, wait, and pick the next phase."""
        state = self.state
        cfg = self._config
        now = self._clock()
        if outcome.traffic:
            state.last_successful_watch_at = now

        state.connection_healthy = False

        reason: str
        if outcome.error is not None:
            self._set_phase(SessionPhase.ERROR)
            error = outcome.error
            state.watch_errors += 1
            state.last_error = str(error)
            watch_errors_total.labels(filter=self._label).inc()

            if is_stale_resource_version(error):
                self._log.warning("resource_version_expired", error=str(error))
                self._set_phase(SessionPhase.BACKOFF_OR_RESET)
                await self._hard_reset("stale_resource_version", cfg.stale_reset_delay_seconds)
                return SessionPhase.LOADING_SNAPSHOT

            state.consecutive_failures += 1
            reason = "error"
            self._log.warning(
                "watch_error",
                error=str(error),
                error_type=type(error).__name__,
                consecutive_failures=state.consecutive_failures,
            )
        elif outcome.stale_connection:
            self._set_phase(SessionPhase.STREAM_ENDED)
            reason = "heartbeat"
        else:
            self._set_phase(SessionPhase.STREAM_ENDED)
            if outcome.traffic:
                state.reset_counters()
            reason = "stream_end"
            self._log.debug("watch_stream_ended", events=outcome.traffic)

        state.reconnect_count += 1
        state.reconnects += 1
        watch_reconnects_total.labels(filter=self._label, reason=reason).inc()
        self._set_phase(SessionPhase.BACKOFF_OR_RESET)

        if state.reconnect_count > cfg.max_reconnects:
            self._log.warning(
                "reconnect_limit_exceeded",
                reconnect_count=state.reconnect_count,
                max_reconnects=cfg.max_reconnects,
            )
            await self._hard_reset("reconnect_limit", cfg.forced_reset_cooldown_seconds)
            return SessionPhase.LOADING_SNAPSHOT

        delay = linear_reconnect_delay(state.reconnect_count, cfg.reconnect_backoff_seconds)
        if outcome.error is not None:
            delay = max(delay, self._error_backoff.delay(state.consecutive_failures - 1))
        self._log.info(
            "watch_reconnecting",
            reason=reason,
            reconnect_count=state.reconnect_count,
            delay_s=round(delay, 2),
        )
        await self._sleep(delay)
        return SessionPhase.WATCHING

    async def _hard_reset(self, reason: str, delay_s: float) -> None:
        """Discard checkpoint, snapshot map, and dedup window, then wait."""
        state = self.state
        state.checkpoint.clear()
        self.dedup.clear()
        state.reset_counters()
        state.generation += 1
        state.hard_resets += 1
        state.watch_started_at = None
        state.connection_healthy = False
        hard_resets_total.labels(filter=self._label, reason=reason).inc()
        self._log.warning("hard_reset", reason=reason, generation=state.generation, delay_s=delay_s)
        await self._sleep(delay_s)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _dispatch(self, change: ChangeEvent) -> None:
        try:
            self._deliver(change)
        except Exception as exc:
            self._log.error(
                "delivery_failed",
                resource=change.resource,
                type=change.type.value,
                error=str(exc),
            )

    async def _ensure_slot(self) -> bool:
        """Re-acquire an admission slot before reloading, if it was handed back."""
        if self._gate is None or self._holding_slot:
            return True
        if not await self._gate.acquire():
            return False
        self._holding_slot = True
        return True

    def _release_slot(self) -> None:
        if self._gate is not None and self._holding_slot:
            self._holding_slot = False
            self._gate.release()

    def _set_phase(self, phase: SessionPhase) -> None:
        if self.state.phase is not phase:
            self._log.debug("phase_transition", from_phase=self.state.phase.value, to_phase=phase.value)
            self.state.phase = phase
