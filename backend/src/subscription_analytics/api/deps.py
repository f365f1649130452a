"""FastAPI dependencies for authentication and service wiring."""
from typing import Optional
import structlog

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import jwt

from subscription_analytics.adapters.stripe_adapter import StripeAdapter
from subscription_analytics.auth.jwt import jwt_auth
from subscription_analytics.cache import MetricsCacheBackend, cache
from subscription_analytics.database import get_session_factory
from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.services.dashboard_service import DashboardService
from subscription_analytics.services.metrics_service import MetricsService
from subscription_analytics.services.webhook_processor import WebhookProcessor

logger = structlog.get_logger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Get the authenticated user id from the bearer JWT.

    Returns:
        User id (``sub`` claim)

    Raises:
        HTTPException: If token is invalid, expired, or missing
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials

    try:
        payload = jwt_auth.verify_access_token(token)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.debug("user_authenticated", user_id=payload["sub"])
    return payload["sub"]


def get_cache() -> MetricsCacheBackend:
    """Metric cache backend (Redis)."""
    return cache


def get_records(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> BillingRecordRepository:
    """Billing record repository bound to the application session factory."""
    return BillingRecordRepository(session_factory)


def get_metrics_service(
    records: BillingRecordRepository = Depends(get_records),
    metrics_cache: MetricsCacheBackend = Depends(get_cache),
) -> MetricsService:
    """Metrics service for the request."""
    return MetricsService(records, metrics_cache)


def get_dashboard_service(
    metrics: MetricsService = Depends(get_metrics_service),
    records: BillingRecordRepository = Depends(get_records),
) -> DashboardService:
    """Dashboard service for the request."""
    return DashboardService(metrics, records)


def get_webhook_processor(
    records: BillingRecordRepository = Depends(get_records),
    metrics: MetricsService = Depends(get_metrics_service),
) -> WebhookProcessor:
    """Webhook processor for the request."""
    return WebhookProcessor(records, metrics)


def get_stripe_adapter() -> StripeAdapter:
    """Get Stripe adapter instance."""
    return StripeAdapter()
