"""FastAPI application entry-point for the meal subscription API."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from meal_api import __version__
from meal_api.config import APISettings, PlatformEnv, load_api_settings
from meal_api.dependencies import dispose_engine, get_clock, get_engine_settings, get_session_factory, init_engine
from meal_api.middleware.auth import AuthenticationMiddleware
from meal_api.middleware.json_formatter import configure_json_logging
from meal_api.middleware.logging import RequestLoggingMiddleware
from meal_api.middleware.prometheus import PrometheusMiddleware
from meal_api.routers import credits, health, maintenance, payments, subscriptions, trials, vendors
from meal_api.routers import metrics as metrics_router
from meal_api.services.maintenance_service import MeteredMaintenanceScheduler
from meal_engine.errors import EngineError, TransientStoreError
from meal_engine.maintenance.scheduler import MaintenanceLoop

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Switch to JSON logging when configured.
    - Start the in-process maintenance loop when enabled.

    On shutdown:
    - Stop the maintenance loop.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()
    engine_settings = get_engine_settings()

    # Fail fast: refuse to start outside dev without a token secret.
    if settings.platform_env != PlatformEnv.DEV and not os.environ.get("AUTH_TOKEN_SECRET"):
        raise RuntimeError(
            f"AUTH_TOKEN_SECRET environment variable is required in {settings.platform_env.value} mode. "
            "Refusing to start."
        )

    if settings.structured_logging:
        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings, engine_settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url.split("@")[-1][:40],
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from meal_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    loop: MaintenanceLoop | None = None
    if settings.maintenance_schedule_enabled:
        clock = get_clock()
        scheduler = MeteredMaintenanceScheduler(get_session_factory(), clock, engine_settings)
        loop = MaintenanceLoop(scheduler, settings.maintenance_cron, clock, engine_settings)
        await loop.start()
    app.state.maintenance_loop = loop

    yield

    if loop is not None:
        await loop.stop()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Mealcycle API",
        description="Billing cycles, skips, credits and fulfillment for recurring meal subscriptions.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(subscriptions.router, prefix="/api/v1")
    app.include_router(credits.router, prefix="/api/v1")
    app.include_router(vendors.router, prefix="/api/v1")
    app.include_router(trials.router, prefix="/api/v1")
    app.include_router(payments.router, prefix="/api/v1")
    app.include_router(maintenance.router, prefix="/api/v1")

    # Prometheus scrape and probes live outside /api/v1.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.error_code, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", exc.error_code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        if isinstance(exc, (OperationalError, InterfaceError)):
            logger.error("Store unavailable on %s: %s", request.url.path, exc)
            transient = TransientStoreError("The backing store is temporarily unavailable")
            return JSONResponse(status_code=transient.status_code, content=transient.to_dict())
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn meal_api.main:app``.
app = create_app()
