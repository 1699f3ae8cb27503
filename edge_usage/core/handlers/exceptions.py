from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from edge_usage.core.clients.analytics import AnalyticsApiError
from edge_usage.core.errors import AllAccountsFailedError, ConfigurationError, dashboard_error

logger = logging.getLogger(__name__)


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> Response:
        if request.url.path.startswith("/api/"):
            return JSONResponse(
                status_code=422,
                content=dashboard_error("validation_error", "Invalid request payload"),
            )
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> Response:
        if request.url.path.startswith("/api/"):
            detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
            return JSONResponse(
                status_code=exc.status_code,
                content=dashboard_error(f"http_{exc.status_code}", detail),
            )
        return await http_exception_handler(request, exc)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        _: Request,
        exc: ConfigurationError,
    ) -> Response:
        return JSONResponse(status_code=400, content=dashboard_error(exc.code, exc.message))

    @app.exception_handler(AllAccountsFailedError)
    async def all_accounts_failed_handler(
        _: Request,
        exc: AllAccountsFailedError,
    ) -> Response:
        logger.warning("All account fetches failed accounts=%s", ",".join(exc.account_ids))
        return JSONResponse(status_code=502, content=dashboard_error("upstream_unavailable", str(exc)))

    @app.exception_handler(AnalyticsApiError)
    async def analytics_error_handler(
        _: Request,
        exc: AnalyticsApiError,
    ) -> Response:
        logger.warning("Analytics API error status=%s error=%s", exc.status_code, exc.message)
        return JSONResponse(status_code=502, content=dashboard_error("upstream_error", exc.message))
