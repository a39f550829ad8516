"""FastAPI application entry-point for the entitlement service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from entitlements import __version__
from entitlements.config import EntitlementSettings
from entitlements.dependencies import (
    dispose_engine,
    dispose_services,
    get_session_factory,
    get_settings,
    init_engine,
    init_services,
)
from entitlements.errors import BillingError, UpstreamError
from entitlements.middleware.json_formatter import JSONFormatter
from entitlements.middleware.logging import RequestLoggingMiddleware
from entitlements.routers import billing, usage, webhooks
from entitlements.state.database import create_tables

logger = logging.getLogger(__name__)


def configure_logging(settings: EntitlementSettings) -> None:
    """Swap the root handlers for a single JSON handler when enabled."""
    if not settings.structured_logging:
        return
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if settings.debug else logging.INFO)
    logger.info("Structured JSON logging enabled")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables when ``auto_create_tables`` is set or the database is
      a local SQLite file.
    - Construct the shared provider gateway, webhook ingestor and usage gate.

    On shutdown:
    - Close the provider HTTP client.
    - Dispose the database engine connection pool.
    """
    settings: EntitlementSettings = app.state.settings
    configure_logging(settings)

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.auto_create_tables or is_local:
        await create_tables(engine)

    if not settings.webhook_secret.get_secret_value():
        logger.warning("ENTITLEMENTS_WEBHOOK_SECRET is not set: webhook signatures will not be verified")

    init_services(settings, get_session_factory())
    logger.info("Entitlement services initialised (provider=%s)", settings.provider_base_url)

    yield

    await dispose_services()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: EntitlementSettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="ReportFlow Entitlements",
        description="Subscription reconciliation and usage entitlement engine.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware, sensitive_headers=settings.webhook_signature_headers)

    app.include_router(webhooks.router)
    app.include_router(billing.router)
    app.include_router(usage.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        content: dict[str, object] = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, UpstreamError):
            content["failures"] = {path: failure.model_dump() for path, failure in exc.failures.items()}
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        else:
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn entitlements.main:app``.
app = create_app()
