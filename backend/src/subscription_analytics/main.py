"""FastAPI application entry point."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from subscription_analytics.cache import cache
from subscription_analytics.config import settings
from subscription_analytics.exceptions import MetricsCalculationError
from subscription_analytics.middleware.logging import LoggingMiddleware, current_request_id, setup_logging
from subscription_analytics.middleware.metrics import MetricsMiddleware
from subscription_analytics.middleware.rate_limit import RateLimitMiddleware
from subscription_analytics.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse

# Setup structured logging
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    logger.info("application_starting", env=settings.app_env)
    yield
    await cache.close()
    logger.info("application_shutting_down")


app = FastAPI(
    title="Subscription Analytics",
    description="MRR, churn, LTV and revenue metrics over Stripe and PayPal subscriptions",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Last added runs first: logging wraps metrics wraps CORS wraps rate limiting
app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

# Mount Prometheus metrics endpoint
app.mount("/metrics", make_asgi_app())


def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: list[ErrorDetail],
    remediation: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        details=details,
        remediation=remediation,
        request_id=current_request_id(),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field-level validation errors."""
    details = [
        ErrorDetail(
            code=ErrorCode.VALIDATION_ERROR,
            message=error["msg"],
            field=".".join(str(loc) for loc in error["loc"]),
            value=error.get("input") if isinstance(error.get("input"), (str, int, float, bool)) else None,
        )
        for error in exc.errors()
    ]

    logger.warning("validation_error", path=request.url.path, error_count=len(details))

    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "ValidationError",
        "Request validation failed",
        details,
        remediation="Check the API documentation for correct request format at /docs",
    )


@app.exception_handler(MetricsCalculationError)
async def metrics_exception_handler(request: Request, exc: MetricsCalculationError) -> JSONResponse:
    """
    Handle metric computation failures.

    The client gets a generic message; the cause is logged.
    """
    logger.error("metrics_request_failed", path=request.url.path, metric=exc.metric, error=exc.message)

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "MetricsError",
        "Metrics are temporarily unavailable",
        [ErrorDetail(code=ErrorCode.METRIC_CALCULATION_FAILED, message=exc.message)],
        remediation=REMEDIATION_HINTS.get(ErrorCode.METRIC_CALCULATION_FAILED),
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Return 503 Service Unavailable for database errors."""
    logger.error(
        "database_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )

    # Don't expose internal database details in production
    message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)

    return _error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DatabaseError",
        "A database error occurred",
        [ErrorDetail(code=ErrorCode.DATABASE_ERROR, message=message)],
        remediation=REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
        headers={"Retry-After": "30"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return a safe 500 for anything uncaught and log the stack trace."""
    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        exception_type=type(exc).__name__,
    )

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "InternalServerError",
        "An unexpected error occurred",
        [
            ErrorDetail(
                code=ErrorCode.INTERNAL_ERROR,
                message=str(exc) if settings.debug else "Internal server error",
            )
        ],
        remediation="Please contact support with the request ID",
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "Subscription Analytics",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }


# Include routers
from subscription_analytics.api.v1 import accounts, dashboard, health  # noqa: E402
from subscription_analytics.api.webhooks import paypal, stripe  # noqa: E402

app.include_router(health.router, tags=["Health"])
app.include_router(dashboard.router, prefix="/v1", tags=["Dashboard"])
app.include_router(accounts.router, prefix="/v1", tags=["Accounts"])
app.include_router(stripe.router, prefix="/v1")
app.include_router(paypal.router, prefix="/v1")
