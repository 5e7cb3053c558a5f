"""FastAPI application entry-point for the membership engine."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from membership_core.config import PlatformEnv
from membership_core.state.database import create_tables
from sqlalchemy.exc import SQLAlchemyError

from membership_api import __version__
from membership_api.config import load_api_settings
from membership_api.dependencies import Services, build_services
from membership_api.middleware.json_formatter import configure_json_logging
from membership_api.middleware.logging import RequestLoggingMiddleware
from membership_api.routers import health, jobs, members, webhooks
from membership_api.services.scheduler import JobScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _make_lifespan(services_factory: Callable[[], Services]):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application startup / shutdown lifecycle.

        On startup:
        - Build the service graph (engine, runtime state, gateways).
        - Create tables in dev or local SQLite mode; production uses Alembic.
        - Start the job scheduler when enabled.

        On shutdown:
        - Stop the scheduler, close HTTP clients and dispose the engine.
        """
        services = services_factory()
        api_settings = services.api_settings

        if api_settings.structured_logging:
            configure_json_logging()
            logger.info("Structured JSON logging enabled")

        is_local = services.settings.database_url.startswith("sqlite")
        if services.settings.env == PlatformEnv.DEV or is_local:
            await create_tables(services.engine)
            logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

        app.state.services = services

        scheduler: JobScheduler | None = None
        if api_settings.scheduler_enabled:
            scheduler = JobScheduler(
                services.runner,
                services.settings.job_schedules,
                timezone=services.settings.scheduler_timezone,
                poll_seconds=services.settings.scheduler_poll_seconds,
                shutdown_timeout=services.settings.scheduler_shutdown_timeout_seconds,
            )
            await scheduler.start()

        yield

        if scheduler is not None:
            await scheduler.stop()
        await services.aclose()
        logger.info("Application shutdown complete")

    return lifespan


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(services_factory: Callable[[], Services] | None = None) -> FastAPI:
    """Construct and configure the FastAPI application.

    *services_factory* replaces :func:`build_services`; tests pass one that
    returns services wired to an in-memory database and fake gateways.
    """
    settings = load_api_settings()

    app = FastAPI(
        title="Membership Engine",
        description="Membership lifecycle consistency engine.",
        version=__version__,
        debug=settings.debug,
        lifespan=_make_lifespan(services_factory or build_services),
    )

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(jobs.router)
    app.include_router(members.router)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn membership_api.main:app``.
app = create_app()
