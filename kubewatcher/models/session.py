"""Per-filter watch session state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from kubewatcher.models.resources import Checkpoint, ResourceFilter


class SessionPhase(StrEnum):
    """Phases of the watch reconnect state machine."""

    LOADING_SNAPSHOT = "loading_snapshot"
    STARTUP_DELAY = "startup_delay"
    WATCHING = "watching"
    ERROR = "error"
    STREAM_ENDED = "stream_ended"
    BACKOFF_OR_RESET = "backoff_or_reset"
    STOPPED = "stopped"


@dataclass
class SessionState:
    """Mutable state owned exclusively by one filter's session task.

    Never shared across sessions.  Diagnostics read it only through
    :meth:`view`, which returns an immutable copy.
    """

    filter: ResourceFilter
    checkpoint: Checkpoint = field(default_factory=Checkpoint)
    phase: SessionPhase = SessionPhase.LOADING_SNAPSHOT
    reconnect_count: int = 0
    consecutive_failures: int = 0
    # Incremented on every hard reset; part of the dedup key.
    generation: int = 0
    connection_healthy: bool = False
    last_heartbeat: datetime | None = None
    last_successful_watch_at: datetime | None = None
    initialized_at: datetime | None = None
    # First watch open after the most recent snapshot load.
    watch_started_at: datetime | None = None

    events_received: int = 0
    events_processed: int = 0
    events_skipped: int = 0
    watch_errors: int = 0
    reconnects: int = 0
    hard_resets: int = 0
    last_error: str = ""

    def mark_traffic(self, now: datetime) -> None:
        """Record stream traffic (object event or bookmark)."""
        self.last_heartbeat = now
        self.connection_healthy = True

    def reset_counters(self) -> None:
        self.reconnect_count = 0
        self.consecutive_failures = 0

    def view(self) -> SessionStateView:
        return SessionStateView(
            filter=self.filter.label,
            phase=self.phase,
            resource_version=self.checkpoint.resource_version,
            tracked_objects=len(self.checkpoint.snapshot),
            reconnect_count=self.reconnect_count,
            consecutive_failures=self.consecutive_failures,
            generation=self.generation,
            connection_healthy=self.connection_healthy,
            last_heartbeat=self.last_heartbeat,
            last_successful_watch_at=self.last_successful_watch_at,
            initialized_at=self.initialized_at,
            events_received=self.events_received,
            events_processed=self.events_processed,
            events_skipped=self.events_skipped,
            watch_errors=self.watch_errors,
            reconnects=self.reconnects,
            hard_resets=self.hard_resets,
            last_error=self.last_error,
        )


@dataclass(frozen=True)
class SessionStateView:
    """Point-in-time, read-only copy of a :class:`SessionState`."""

    filter: str
    phase: SessionPhase
    resource_version: str
    tracked_objects: int
    reconnect_count: int
    consecutive_failures: int
    generation: int
    connection_healthy: bool
    last_heartbeat: datetime | None
    last_successful_watch_at: datetime | None
    initialized_at: datetime | None
    events_received: int
    events_processed: int
    events_skipped: int
    watch_errors: int
    reconnects: int
    hard_resets: int
    last_error: str
