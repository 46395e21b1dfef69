"""FastAPI application factory for kubemeta.

Usage::

    from kubemeta.api.app import create_app

    app = create_app(client=watch_client)

The factory is used by both the production bootstrap (``kubemeta.app``)
and unit tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kubemeta.api.routes import router
from kubemeta.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")


def create_app(client: Any) -> FastAPI:
    """Create the kubemeta FastAPI application.

    Args:
        client: A started :class:`~kubemeta.cache.watch_client.WatchClient`
            (or anything with ``synced``, ``pod_table_size`` and ``get_pod``).

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from kubemeta import __version__

    app = FastAPI(
        title="kubemeta",
        summary="Kubernetes metadata cache",
        version=__version__,
        docs_url="/api/v1/docs",
        redoc_url=None,
        openapi_url="/api/v1/openapi.json",
    )
    app.state.client = client
    app.include_router(router)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="INTERNAL_ERROR", detail="An unexpected error occurred.").model_dump(),
        )

    return app
