from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from edge_usage.core.errors import dashboard_error
from edge_usage.core.utils.request_id import get_request_id

logger = logging.getLogger(__name__)


def add_api_unhandled_error_middleware(app: FastAPI) -> None:
    """Turn uncaught exceptions under /api/ into a 500 error envelope; other paths re-raise."""

    @app.middleware("http")
    async def api_unhandled_error_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if not request.url.path.startswith("/api/"):
            return await call_next(request)
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled dashboard API error request_id=%s path=%s", get_request_id(), request.url.path)
            return JSONResponse(
                status_code=500,
                content=dashboard_error("internal_error", "Unexpected error"),
            )
