"""Route handlers for the kubewatcher REST API.

Dependencies (session registry, readiness callback, config) are read from
``request.app.state``, populated by :func:`kubewatcher.api.app.create_app`.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kubewatcher import __version__
from kubewatcher.api.schemas import ErrorResponse, HealthResponse, SessionResponse, SessionsResponse

# Probes and metrics live at the root; diagnostics under /api/v1.
probes = APIRouter()
router = APIRouter()


def _health(request: Request, status: str) -> HealthResponse:
    return HealthResponse(
        status=status,
        timestamp=datetime.now(tz=UTC),
        uptime_seconds=round(time.monotonic() - request.app.state.started_monotonic, 3),
        version=__version__,
    )


@probes.get("/healthz", response_model=HealthResponse)
async def healthz(request: Request) -> HealthResponse:
    """Liveness: the process is up and serving."""
    return _health(request, "alive")


@probes.get("/readyz", response_model=HealthResponse, responses={503: {"model": HealthResponse}})
async def readyz(request: Request) -> JSONResponse:
    """Readiness: the watch engine is running."""
    ready = bool(request.app.state.ready_fn())
    body = _health(request, "ready" if ready else "not ready")
    return JSONResponse(status_code=200 if ready else 503, content=body.model_dump(mode="json"))


@probes.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/sessions", response_model=SessionsResponse)
async def list_sessions(request: Request) -> SessionsResponse:
    views = request.app.state.registry.snapshot()
    return SessionsResponse(
        cluster_name=request.app.state.cluster_name,
        sessions=[SessionResponse.from_view(views[label]) for label in sorted(views)],
    )


@router.get(
    "/sessions/{label:path}",
    response_model=SessionResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_session(label: str, request: Request) -> SessionResponse | JSONResponse:
    view = request.app.state.registry.snapshot().get(label)
    if view is None:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="SESSION_NOT_FOUND", detail=f"no session for {label}").model_dump(),
        )
    return SessionResponse.from_view(view)
