"""
Dashboard API endpoints.

Provides endpoints for:
- GET /v1/dashboard - Charts and summary for a date range
- GET /v1/dashboard/metrics - All six metrics for a date range
- GET /v1/dashboard/snapshots - Persisted metric reads
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
import structlog

from subscription_analytics.api.deps import get_current_user, get_dashboard_service, get_metrics_service
from subscription_analytics.config import settings
from subscription_analytics.schemas.metrics import DashboardData, DateRange, MetricsData, MetricsSnapshot
from subscription_analytics.services.dashboard_service import (
    MAX_DASHBOARD_RANGE_DAYS,
    DashboardService,
    resolve_date_range,
)
from subscription_analytics.services.metrics_service import MetricsService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/dashboard")

PERIOD_PATTERN = "^(7d|30d|90d|1y|all)$"


def _date_range(
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    period: str,
    allow_all_time: bool,
    max_days: Optional[int] = None,
) -> Optional[DateRange]:
    try:
        return resolve_date_range(start_date, end_date, period, allow_all_time=allow_all_time, max_days=max_days)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid date range: {e}")


@router.get("", response_model=DashboardData)
async def get_dashboard(
    start_date: Optional[datetime] = Query(None, description="Range start (ISO 8601)"),
    end_date: Optional[datetime] = Query(None, description="Range end (ISO 8601)"),
    period: str = Query(settings.dashboard_default_period, pattern=PERIOD_PATTERN),
    user_id: str = Depends(get_current_user),
    dashboard: DashboardService = Depends(get_dashboard_service),
) -> DashboardData:
    """
    Get dashboard charts and summary.

    Without explicit dates the range covers the last ``period``; ``all``
    falls back to 30 days since the charts are drawn day by day. Explicit
    ranges longer than a year are rejected with 400.
    """
    date_range = _date_range(start_date, end_date, period, allow_all_time=False, max_days=MAX_DASHBOARD_RANGE_DAYS)
    return await dashboard.get_dashboard(user_id, date_range)


@router.get("/metrics", response_model=MetricsData)
async def get_metrics(
    start_date: Optional[datetime] = Query(None, description="Range start (ISO 8601)"),
    end_date: Optional[datetime] = Query(None, description="Range end (ISO 8601)"),
    period: str = Query(settings.dashboard_default_period, pattern=PERIOD_PATTERN),
    user_id: str = Depends(get_current_user),
    metrics: MetricsService = Depends(get_metrics_service),
) -> MetricsData:
    """
    Get MRR, churn, LTV, active users, revenue and refunds.

    ``period=all`` without explicit dates computes over all time.
    """
    date_range = _date_range(start_date, end_date, period, allow_all_time=True)

    data = await metrics.get_all_metrics(user_id, date_range)
    await metrics.save_snapshot(user_id, data, date_range)

    logger.info("metrics_served", user_id=user_id, period=period)
    return data


@router.get("/snapshots", response_model=list[MetricsSnapshot])
async def list_snapshots(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
    metrics: MetricsService = Depends(get_metrics_service),
) -> list[MetricsSnapshot]:
    """List the most recent persisted metric reads."""
    snapshots = await metrics.list_snapshots(user_id, limit=limit)
    return [MetricsSnapshot.model_validate(snapshot) for snapshot in snapshots]
