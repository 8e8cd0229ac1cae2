"""
User Segments - Main Application Entry Point

This module initializes the FastAPI application with all necessary middleware,
monitoring tools, background tasks and route configurations. It sets up:
- Structured logging with correlation IDs
- Sentry error tracking (when a DSN is configured)
- Prometheus metrics and instrumentation
- The database context and the TTL sweeper lifecycle
- API and report download routes
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import sentry_sdk
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import make_asgi_app
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from usersegments.api.router import api_router
from usersegments.core.error_handler import register_exception_handlers
from usersegments.core.logging import get_logger, setup_logging
from usersegments.core.middleware import (
    CorrelationIDMiddleware,
    PrometheusMiddleware,
    RequestLoggingMiddleware,
)
from usersegments.core.settings import AppSettings, get_settings
from usersegments.db.session import Database
from usersegments.tasks.ttl_sweeper import TTLSweeper

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Wait for the database, start the TTL sweeper, and tear both down on
    shutdown. The sweeper is stopped first so its in-flight tick can finish
    before the pool is disposed.
    """
    settings: AppSettings = app.state.settings
    database: Database = app.state.database
    sweeper: TTLSweeper = app.state.ttl_sweeper

    try:
        await database.wait_until_ready()
        if settings.segments.TTL_SWEEPER_ENABLED:
            sweeper.start()
        else:
            logger.warning("TTL sweeper disabled by configuration")
    except Exception as e:
        logger.error(f"Startup failed: {str(e)}", exc_info=True)
        await database.dispose()
        raise

    try:
        yield
    finally:
        logger.info("Shutting down application...")
        await sweeper.stop()
        await database.dispose()


def create_application(settings: Optional[AppSettings] = None) -> FastAPI:
    """
    Creates and configures the FastAPI application with all middleware and routes.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    if settings.logging.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.logging.SENTRY_DSN,
            environment=settings.app.ENVIRONMENT,
            traces_sample_rate=settings.logging.SENTRY_TRACES_SAMPLE_RATE,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
            ],
        )

    app = FastAPI(
        title=settings.app.TITLE,
        description=settings.app.DESCRIPTION,
        version=settings.app.VERSION,
        docs_url="/docs" if not settings.app.is_production else None,
        redoc_url="/redoc" if not settings.app.is_production else None,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Segments", "description": "Segment creation, rollout and deletion"},
            {"name": "User Segments", "description": "Assigning segments to users"},
            {"name": "History", "description": "Assignment history reports"},
        ]
    )

    database = Database(settings.db, echo=settings.app.DEBUG)
    app.state.settings = settings
    app.state.database = database
    app.state.ttl_sweeper = TTLSweeper(
        database.session_factory,
        interval=settings.segments.TTL_CHECK_INTERVAL,
    )

    # Last added runs first
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    register_exception_handlers(app)

    app.include_router(api_router)

    reports_dir = settings.reports.STORAGE_DIR
    reports_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/reports", StaticFiles(directory=reports_dir), name="reports")

    if settings.monitoring.ENABLE_METRICS:
        app.mount("/metrics", make_asgi_app())

    @app.get("/healthz", tags=["Monitoring"])
    async def health_check():
        """
        Health check endpoint for monitoring.
        """
        database_ok = await database.check_connection()
        body = {
            "status": "healthy" if database_ok else "unhealthy",
            "database": database_ok,
            "ttl_sweeper": app.state.ttl_sweeper.running,
            "timestamp": time.time(),
            "version": settings.app.VERSION,
            "environment": settings.app.ENVIRONMENT,
        }
        return JSONResponse(status_code=200 if database_ok else 503, content=body)

    logger.info(
        "Application created",
        extra={"environment": settings.app.ENVIRONMENT, "version": settings.app.VERSION}
    )
    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_application(settings),
        host=settings.app.HOST,
        port=settings.app.PORT,
        log_config=None,  # Use our custom logging config
        proxy_headers=True,
        forwarded_allow_ips="*"
    )


if __name__ == "__main__":
    run()
