"""Health governor: heartbeat watchdog and state janitors for one session.

Three background tasks run for the lifetime of a session and are cancelled
with it:

- heartbeat watchdog: while a stream is open, flags the connection
  unhealthy when no traffic (object events or bookmarks) arrived for 3x the
  heartbeat interval, and asks the reconnector to reopen the stream;
- snapshot janitor (hourly): evicts snapshot entries not seen for 24 h;
- dedup janitor (every 5 min): evicts expired dedup window entries.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from kubewatcher.collector.dedup import DedupWindow
from kubewatcher.models.session import SessionPhase, SessionState
from kubewatcher.observability.logging import get_logger

_STALE_MULTIPLIER: int = 3
_SNAPSHOT_JANITOR_INTERVAL_S: float = 3600.0
_DEDUP_JANITOR_INTERVAL_S: float = 300.0
_DEFAULT_SNAPSHOT_TTL = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class HealthGovernor:
    """Supervises one session's connection liveness and bounds its memory."""

    def __init__(
        self,
        state: SessionState,
        dedup: DedupWindow,
        heartbeat_interval_s: float = 30.0,
        keep_alive: bool = True,
        snapshot_ttl: timedelta = _DEFAULT_SNAPSHOT_TTL,
        snapshot_janitor_interval_s: float = _SNAPSHOT_JANITOR_INTERVAL_S,
        dedup_janitor_interval_s: float = _DEDUP_JANITOR_INTERVAL_S,
        on_stale: Callable[[], None] | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._state = state
        self._dedup = dedup
        self._heartbeat_interval_s = heartbeat_interval_s
        self._keep_alive = keep_alive
        self._snapshot_ttl = snapshot_ttl
        self._snapshot_janitor_interval_s = snapshot_janitor_interval_s
        self._dedup_janitor_interval_s = dedup_janitor_interval_s
        self._on_stale = on_stale
        self._clock = clock
        self._sleep = sleep
        self._reported_heartbeat: datetime | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._log = get_logger("collector.health").bind(filter=state.filter.label)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._tasks:
            return
        label = self._state.filter.label
        if self._keep_alive:
            self._tasks.append(
                asyncio.create_task(
                    self._periodic(self._heartbeat_interval_s, self.check_heartbeat),
                    name=f"heartbeat-{label}",
                )
            )
        self._tasks.append(
            asyncio.create_task(
                self._periodic(self._snapshot_janitor_interval_s, self.evict_snapshot),
                name=f"snapshot-janitor-{label}",
            )
        )
        self._tasks.append(
            asyncio.create_task(
                self._periodic(self._dedup_janitor_interval_s, self.evict_dedup),
                name=f"dedup-janitor-{label}",
            )
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_heartbeat(self) -> bool:
        """Mark the open stream unhealthy if it has gone quiet; return True if so.

        ``last_heartbeat`` is seeded when the stream opens, so a stream that
        never carries traffic is caught too.  Each quiet period is reported once.
        """
        state = self._state
        if state.phase is not SessionPhase.WATCHING or state.last_heartbeat is None:
            return False
        if state.last_heartbeat == self._reported_heartbeat:
            return False
        silence = self._clock() - state.last_heartbeat
        limit = timedelta(seconds=self._heartbeat_interval_s * _STALE_MULTIPLIER)
        if silence <= limit:
            return False

        state.connection_healthy = False
        self._reported_heartbeat = state.last_heartbeat
        self._log.warning(
            "connection_stale",
            silence_s=round(silence.total_seconds(), 1),
            limit_s=limit.total_seconds(),
        )
        if self._on_stale is not None:
            self._on_stale()
        return True

    def evict_snapshot(self) -> int:
        """Drop snapshot entries whose last sighting is older than the TTL."""
        cutoff = self._clock() - self._snapshot_ttl
        snapshot = self._state.checkpoint.snapshot
        expired = [key for key, entry in snapshot.items() if entry.last_seen < cutoff]
        for key in expired:
            del snapshot[key]
        if expired:
            self._log.info("snapshot_entries_evicted", count=len(expired), remaining=len(snapshot))
        return len(expired)

    def evict_dedup(self) -> int:
        removed = self._dedup.evict_expired()
        if removed:
            self._log.debug("dedup_entries_evicted", count=removed, remaining=len(self._dedup))
        return removed

    async def _periodic(self, interval_s: float, check: Callable[[], Any]) -> None:
        while True:
            await self._sleep(interval_s)
            try:
                check()
            except Exception as exc:
                self._log.error("health_check_error", check=getattr(check, "__name__", ""), error=str(exc))
