"""FastAPI application factory for kubewatcher.

Usage::

    from kubewatcher.api.app import create_app

    app = create_app(
        registry=engine.registry,
        ready_fn=lambda: engine.running,
        cluster_name=config.cluster_name,
    )

The factory is used by both the production bootstrap (``kubewatcher.app``)
and unit tests.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kubewatcher.api.routes import probes, router
from kubewatcher.api.schemas import ErrorResponse
from kubewatcher.collector.registry import SessionRegistry

_log = structlog.get_logger(component="api.app")

_API_PREFIX = "/api/v1"


def create_app(
    registry: SessionRegistry,
    ready_fn: Callable[[], bool] | None = None,
    cluster_name: str = "",
) -> FastAPI:
    """Create and configure the kubewatcher FastAPI application.

    Args:
        registry:     Session registry backing the diagnostics endpoints.
        ready_fn:     Readiness callback for ``/readyz``.  Defaults to
                      "at least one session registered".
        cluster_name: Reported in the sessions listing.

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from kubewatcher import __version__

    app = FastAPI(
        title="kubewatcher",
        summary="Kubernetes resource change watcher",
        version=__version__,
        docs_url="/api/v1/docs",
        redoc_url=None,
        openapi_url="/api/v1/openapi.json",
    )

    app.state.registry = registry
    app.state.ready_fn = ready_fn or (lambda: len(registry) > 0)
    app.state.cluster_name = cluster_name
    app.state.started_monotonic = time.monotonic()

    app.include_router(probes)
    app.include_router(router, prefix=_API_PREFIX)

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
