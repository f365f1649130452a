"""
Dashboard service.

Builds the dashboard payload on top of the metrics service: daily MRR and
revenue series, a weekly churn series, the active plan distribution and a
summary with MRR growth against the previous period of equal length.
"""

import asyncio
from datetime import datetime, time, timedelta
from typing import List, Optional
import structlog

from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.schemas.metrics import (
    ChartDataPoint,
    DashboardData,
    DashboardSummary,
    DateRange,
    PlanDistributionItem,
)
from subscription_analytics.services.metrics_service import MetricsService

logger = structlog.get_logger(__name__)

PERIOD_DAYS = {
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "1y": 365,
}
PERIOD_ALL = "all"
FALLBACK_PERIOD_DAYS = 30

# Charts are built one day at a time
MAX_DASHBOARD_RANGE_DAYS = 366

EPOCH = datetime(1970, 1, 1)
UNKNOWN_PLAN = "Unknown Plan"


def resolve_date_range(
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    period: Optional[str],
    allow_all_time: bool = False,
    now: Optional[datetime] = None,
    max_days: Optional[int] = None,
) -> Optional[DateRange]:
    """
    Turn request parameters into a date range.

    Explicit start and end dates win. Otherwise the range is the last N days
    of ``period``, ending now.

    Args:
        start_date: Explicit range start
        end_date: Explicit range end
        period: One of 7d, 30d, 90d, 1y or all
        allow_all_time: Return None for ``all`` instead of the 30 day fallback
        now: Reference time (defaults to utcnow)
        max_days: Longest accepted span for explicit dates

    Returns:
        DateRange, or None for all time when allowed

    Raises:
        ValueError: If the end is before the start or the span exceeds max_days
    """
    if start_date is not None and end_date is not None:
        date_range = DateRange(start=start_date, end=end_date)
        if max_days is not None and date_range.end - date_range.start > timedelta(days=max_days):
            raise ValueError(f"range must not exceed {max_days} days")
        return date_range

    if period == PERIOD_ALL and allow_all_time:
        return None

    now = now or datetime.utcnow()
    days = PERIOD_DAYS.get(period or "", FALLBACK_PERIOD_DAYS)
    return DateRange(start=now - timedelta(days=days), end=now)


def _end_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.max)


def _growth_percent(current: float, previous: float) -> float:
    if previous > 0:
        return (current - previous) / previous * 100
    return 0.0


class DashboardService:
    """Service assembling dashboard charts and summary for a user."""

    def __init__(self, metrics: MetricsService, records: BillingRecordRepository):
        self.metrics = metrics
        self.records = records

    async def get_dashboard(self, user_id: str, date_range: DateRange) -> DashboardData:
        """
        Build the full dashboard for a user and range.

        Args:
            user_id: Dashboard user
            date_range: Range the charts and summary cover

        Returns:
            DashboardData
        """
        logger.info(
            "building_dashboard",
            user_id=user_id,
            start=date_range.start.isoformat(),
            end=date_range.end.isoformat(),
        )

        current, previous, mrr_chart, churn_chart, revenue_chart, plans = await asyncio.gather(
            self.metrics.get_all_metrics(user_id, date_range),
            self.metrics.get_all_metrics(user_id, date_range.previous_period()),
            self.mrr_chart(user_id, date_range),
            self.churn_chart(user_id, date_range),
            self.revenue_chart(user_id, date_range),
            self.plan_distribution(user_id, date_range),
        )

        return DashboardData(
            mrr_chart=mrr_chart,
            churn_chart=churn_chart,
            revenue_chart=revenue_chart,
            plan_distribution=plans,
            summary=DashboardSummary(
                current_mrr=current.mrr,
                mrr_growth=_growth_percent(current.mrr, previous.mrr),
                churn_rate=current.churn * 100,
                active_subscriptions=current.active_users,
                total_revenue=current.total_revenue,
            ),
        )

    async def mrr_chart(self, user_id: str, date_range: DateRange) -> List[ChartDataPoint]:
        """Daily MRR of subscriptions started up to the end of each day."""
        points = []
        day = date_range.start
        while day <= date_range.end:
            mrr = await self.metrics.calculate_mrr(user_id, DateRange(start=EPOCH, end=_end_of_day(day)))
            points.append(ChartDataPoint(date=day.date().isoformat(), value=mrr))
            day += timedelta(days=1)
        return points

    async def churn_chart(self, user_id: str, date_range: DateRange) -> List[ChartDataPoint]:
        """Weekly churn in percent; the last week is cut at the range end."""
        points = []
        week_start = date_range.start
        while week_start <= date_range.end:
            week_end = min(week_start + timedelta(days=6), date_range.end)
            churn = await self.metrics.calculate_churn_rate(user_id, DateRange(start=week_start, end=week_end))
            points.append(ChartDataPoint(date=week_start.date().isoformat(), value=churn * 100))
            week_start += timedelta(days=7)
        return points

    async def revenue_chart(self, user_id: str, date_range: DateRange) -> List[ChartDataPoint]:
        """Daily sum of charges."""
        points = []
        day = date_range.start
        while day <= date_range.end:
            revenue = await self.metrics.get_total_revenue(user_id, DateRange(start=day, end=_end_of_day(day)))
            points.append(ChartDataPoint(date=day.date().isoformat(), value=revenue))
            day += timedelta(days=1)
        return points

    async def plan_distribution(self, user_id: str, date_range: DateRange) -> List[PlanDistributionItem]:
        """Active subscriptions overlapping the range, grouped by plan."""
        rows = await self.records.plan_distribution(user_id, date_range)
        return [
            PlanDistributionItem(plan_name=plan_name or UNKNOWN_PLAN, count=count, revenue=float(revenue))
            for plan_name, count, revenue in rows
        ]
