"""CardPay Billing API — FastAPI application."""
from __future__ import annotations

import logging

from src.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi import Request as FastAPIRequest
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.db.engine import engine, get_session
from src.db.tables import Base
from src.services.errors import BillingError, ProviderError
from src.services.scheduler import start_scheduler, stop_scheduler
from config.settings import settings

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Webhook bodies and emails stay out of Sentry
        send_default_pii=False,
        before_send=lambda event, hint: (
            {**event, "request": {**event.get("request", {}), "cookies": None, "data": None}}
            if "request" in event else event
        ),
    )

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, start the reconciliation scheduler."""
    # Validate configuration before anything else
    from src.startup_checks import validate_settings
    validate_settings()

    # Import all tables so they're registered with Base.metadata
    import src.db.user_tables  # noqa: F401
    import src.db.subscription_tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    start_scheduler(interval_minutes=settings.RECONCILE_INTERVAL_MINUTES)

    yield

    logger.info("Shutting down — draining connections...")
    stop_scheduler()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="CardPay Billing API",
    version=VERSION,
    description="Subscriptions, payments and tier entitlement for the business-card platform",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
from src.middleware.metrics import MetricsMiddleware
app.add_middleware(MetricsMiddleware)

# Request ID tracing: outermost, so every log line in the request carries it
from src.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)


# ---- Routers ----
from src.api.payments import router as payments_router
app.include_router(payments_router)

from src.api.manual_payments import router as manual_payments_router
app.include_router(manual_payments_router)

from src.api.tiers import router as tiers_router
app.include_router(tiers_router)

from src.api.admin import router as admin_router
app.include_router(admin_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check — validates DB connectivity."""
    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Health check database probe failed")
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {"status": status, "db": db_status, "version": VERSION}


# --- Structured Error Responses ---

_HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    503: "unavailable",
}


@app.exception_handler(BillingError)
async def billing_error_handler(request: FastAPIRequest, exc: BillingError):
    """Domain errors carry their own status and code."""
    if isinstance(exc, ProviderError):
        logger.warning(
            "Provider error on %s %s: provider=%s retryable=%s status=%s %s",
            request.method, request.url.path, exc.provider, exc.retryable, exc.status_code, exc.message,
        )
    elif exc.http_status >= 500 or exc.http_status == 409:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content={
        "error": exc.code,
        "message": exc.message,
    })


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=422, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: FastAPIRequest, exc: StarletteHTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": _HTTP_ERROR_CODES.get(exc.status_code, "error"),
        "message": exc.detail,
    }, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions — never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })
