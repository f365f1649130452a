"""Health check endpoints for liveness and readiness probes."""
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_analytics.api.deps import get_cache
from subscription_analytics.cache import MetricsCacheBackend
from subscription_analytics.database import get_session_factory

logger = structlog.get_logger(__name__)

router = APIRouter()

HEALTH_PROBE_KEY = "health:probe"


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> dict[str, str]:
    """
    Liveness probe.

    Does not check external dependencies.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": "0.1.0",
    }


@router.get("/health/ready")
async def readiness_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    metrics_cache: MetricsCacheBackend = Depends(get_cache),
) -> JSONResponse:
    """
    Readiness probe.

    The database is required. The cache is reported but not required, since
    metric reads fall back to recomputation when it is down.
    """
    checks = {"database": "unknown", "cache": "unknown"}
    ready = True

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        checks["database"] = "disconnected"
        ready = False

    # Cache writes fail open, so a False result is the only failure signal
    if await metrics_cache.set(HEALTH_PROBE_KEY, "ok", 10):
        checks["cache"] = "connected"
    else:
        logger.warning("cache_health_check_failed")
        checks["cache"] = "disconnected"

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "ready": ready,
            "checks": checks,
            "timestamp": datetime.utcnow().isoformat(),
        },
    )
