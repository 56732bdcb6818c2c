"""Response models for the kubewatcher REST API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from kubewatcher.models.session import SessionStateView


class ErrorResponse(BaseModel):
    error: str
    detail: str


class HealthResponse(BaseModel):
    """Liveness / readiness probe body."""

    status: str
    timestamp: datetime
    uptime_seconds: float
    version: str


class SessionResponse(BaseModel):
    """Diagnostics view of one watch session."""

    filter: str
    phase: str
    resource_version: str
    tracked_objects: int
    reconnect_count: int
    consecutive_failures: int
    generation: int
    connection_healthy: bool
    last_heartbeat: datetime | None = None
    last_successful_watch_at: datetime | None = None
    initialized_at: datetime | None = None
    events_received: int
    events_processed: int
    events_skipped: int
    watch_errors: int
    reconnects: int
    hard_resets: int
    last_error: str = ""

    @classmethod
    def from_view(cls, view: SessionStateView) -> SessionResponse:
        return cls(
            filter=view.filter,
            phase=view.phase.value,
            resource_version=view.resource_version,
            tracked_objects=view.tracked_objects,
            reconnect_count=view.reconnect_count,
            consecutive_failures=view.consecutive_failures,
            generation=view.generation,
            connection_healthy=view.connection_healthy,
            last_heartbeat=view.last_heartbeat,
            last_successful_watch_at=view.last_successful_watch_at,
            initialized_at=view.initialized_at,
            events_received=view.events_received,
            events_processed=view.events_processed,
            events_skipped=view.events_skipped,
            watch_errors=view.watch_errors,
            reconnects=view.reconnects,
            hard_resets=view.hard_resets,
            last_error=view.last_error,
        )


class SessionsResponse(BaseModel):
    cluster_name: str
    sessions: list[SessionResponse]
