from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from edge_usage.core.clients.http import close_http_client, init_http_client
from edge_usage.core.config.settings import get_settings
from edge_usage.core.handlers.exceptions import add_exception_handlers
from edge_usage.core.middleware import add_api_unhandled_error_middleware, add_request_id_middleware
from edge_usage.core.usage.refresh_scheduler import build_refresh_scheduler
from edge_usage.db.session import close_db, init_db
from edge_usage.modules.alerts import api as alerts_api
from edge_usage.modules.config import api as config_api
from edge_usage.modules.dashboard import api as dashboard_api
from edge_usage.modules.health import api as health_api
from edge_usage.modules.metrics import api as metrics_api

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    if settings.kv_backend == "db":
        await init_db()
    await init_http_client()
    scheduler = build_refresh_scheduler()
    await scheduler.start()
    logger.info(
        "Startup complete kv_backend=%s prewarm_enabled=%s threshold_check_enabled=%s",
        settings.kv_backend,
        scheduler.prewarm_enabled,
        scheduler.threshold_check_enabled,
    )

    try:
        yield
    finally:
        try:
            await scheduler.stop()
        finally:
            try:
                await close_http_client()
            finally:
                await close_db()


def create_app() -> FastAPI:
    app = FastAPI(title="edge-usage-dashboard", version="0.1.0", lifespan=lifespan)

    # Registered innermost so unhandled errors are logged with the request id still bound.
    add_api_unhandled_error_middleware(app)
    add_request_id_middleware(app)
    add_exception_handlers(app)

    app.include_router(dashboard_api.router)
    app.include_router(config_api.router)
    app.include_router(alerts_api.router)
    app.include_router(health_api.router)
    app.include_router(metrics_api.router)

    return app


app = create_app()
