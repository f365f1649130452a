"""
Metrics service for subscription analytics.

Calculations:
- MRR: Sum of active subscription prices normalized to monthly
- Churn Rate: Canceled in range / alive at range start
- LTV: ARPU (MRR / active subscriptions) * average lifespan in months
- Active Users: Active subscriptions, optionally overlapping a range
- Revenue / Refunds: Sum of charge / refund transactions

Every metric is read through the cache first. A miss is computed from the
billing records and written back with the configured TTL.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, TypeVar
import structlog

from subscription_analytics.cache import (
    MetricsCacheBackend,
    date_range_descriptor,
    metric_cache_key,
    owned_by,
    user_cache_pattern,
)
from subscription_analytics.config import settings
from subscription_analytics.exceptions import MetricsCalculationError
from subscription_analytics.models.metrics_snapshot import MetricsSnapshot
from subscription_analytics.models.transaction import TransactionType
from subscription_analytics.monitoring import (
    metric_cache_hits_total,
    metric_cache_invalidations_total,
    metric_cache_misses_total,
    metric_calculation_failures_total,
)
from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.schemas.metrics import DateRange, MetricsData
from subscription_analytics.services.normalization import normalize_to_monthly_revenue

logger = structlog.get_logger(__name__)

T = TypeVar("T", int, float)

SECONDS_PER_MONTH = 30 * 24 * 60 * 60

# Used when no subscription history exists yet
DEFAULT_LIFESPAN_MONTHS = 12

METRIC_MRR = "mrr"
METRIC_CHURN = "churn"
METRIC_LTV = "ltv"
METRIC_ACTIVE_USERS = "active_users"
METRIC_REVENUE = "revenue"
METRIC_REFUNDS = "refunds"


class MetricsService:
    """
    Service for calculating, caching and invalidating subscription metrics.

    All reads are scoped to the subscriptions of accounts owned by ``user_id``.
    """

    def __init__(
        self,
        records: BillingRecordRepository,
        cache: MetricsCacheBackend,
        ttl: Optional[int] = None,
    ):
        """
        Initialize metrics service.

        Args:
            records: Billing record repository
            cache: Metric cache backend
            ttl: Cache TTL in seconds (defaults to settings.metrics_cache_ttl_seconds)
        """
        self.records = records
        self.cache = cache
        self.ttl = ttl or settings.metrics_cache_ttl_seconds

    async def _cached(
        self,
        metric: str,
        user_id: str,
        date_range: Optional[DateRange],
        parse: Callable[[object], T],
        compute: Callable[[], Awaitable[T]],
        failure_message: str,
    ) -> T:
        key = metric_cache_key(metric, user_id, date_range)

        try:
            cached = await self.cache.get(key)
            if cached is not None:
                metric_cache_hits_total.labels(metric=metric).inc()
                return parse(cached)

            metric_cache_misses_total.labels(metric=metric).inc()
            value = await compute()
            await self.cache.set(key, str(value), self.ttl)
            return value

        except Exception as e:
            metric_calculation_failures_total.labels(metric=metric).inc()
            logger.exception("metric_calculation_failed", metric=metric, user_id=user_id, error=str(e))
            raise MetricsCalculationError(metric, failure_message) from e

    async def calculate_mrr(self, user_id: str, date_range: Optional[DateRange] = None) -> float:
        """
        Calculate Monthly Recurring Revenue.

        Args:
            user_id: Dashboard user
            date_range: Keep only subscriptions that started within this range

        Returns:
            Sum of active subscription prices normalized to monthly
        """

        async def compute() -> float:
            rows = await self.records.list_active_subscription_prices(user_id, started_within=date_range)
            total = sum(
                (normalize_to_monthly_revenue(price, cycle) for price, cycle in rows),
                Decimal(0),
            )
            logger.info("mrr_calculated", user_id=user_id, subscriptions=len(rows), mrr=str(total))
            return float(total)

        return await self._cached(METRIC_MRR, user_id, date_range, float, compute, "Failed to calculate MRR")

    async def calculate_churn_rate(self, user_id: str, date_range: Optional[DateRange] = None) -> float:
        """
        Calculate churn rate as a fraction.

        Churn = subscriptions canceled within the range / subscriptions alive
        at the range start. Without a range, or without any subscription alive
        at the start, churn is 0.
        """
        if date_range is None:
            return 0.0

        async def compute() -> float:
            at_start = await self.records.count_subscriptions_alive_at(user_id, date_range.start)
            canceled = await self.records.count_canceled_between(user_id, date_range)
            rate = canceled / at_start if at_start > 0 else 0.0
            logger.info(
                "churn_calculated",
                user_id=user_id,
                subscriptions_at_start=at_start,
                canceled=canceled,
                churn_rate=rate,
            )
            return rate

        return await self._cached(
            METRIC_CHURN, user_id, date_range, float, compute, "Failed to calculate churn rate"
        )

    async def calculate_ltv(self, user_id: str, date_range: Optional[DateRange] = None) -> float:
        """
        Calculate customer Lifetime Value.

        LTV = ARPU * average lifespan in months, where ARPU = MRR / active
        subscriptions. The lifespan averages active and canceled subscriptions
        (open-ended ones run until now) in 30-day months.
        """

        async def compute() -> float:
            mrr = await self.calculate_mrr(user_id, date_range)
            active = await self.get_active_users(user_id, date_range)
            arpu = mrr / active if active > 0 else 0.0

            lifespan = await self._average_lifespan_months(user_id)
            ltv = arpu * lifespan
            logger.info("ltv_calculated", user_id=user_id, arpu=arpu, lifespan_months=lifespan, ltv=ltv)
            return ltv

        return await self._cached(METRIC_LTV, user_id, date_range, float, compute, "Failed to calculate LTV")

    async def _average_lifespan_months(self, user_id: str) -> float:
        spans = await self.records.list_subscription_lifespans(user_id)
        if not spans:
            return DEFAULT_LIFESPAN_MONTHS

        now = datetime.utcnow()
        months = [((end or now) - start).total_seconds() / SECONDS_PER_MONTH for start, end in spans]
        return (sum(months) / len(months)) or DEFAULT_LIFESPAN_MONTHS

    async def get_active_users(self, user_id: str, date_range: Optional[DateRange] = None) -> int:
        """
        Count active subscriptions.

        Args:
            user_id: Dashboard user
            date_range: Keep only subscriptions whose interval overlaps this range

        Returns:
            Active subscription count
        """

        async def compute() -> int:
            return await self.records.count_active_subscriptions(user_id, overlapping=date_range)

        return await self._cached(
            METRIC_ACTIVE_USERS, user_id, date_range, int, compute, "Failed to get active users"
        )

    async def get_total_revenue(self, user_id: str, date_range: Optional[DateRange] = None) -> float:
        """Sum of charge transactions, optionally only those within the range."""

        async def compute() -> float:
            total = await self.records.sum_transactions(user_id, [TransactionType.CHARGE], date_range)
            return float(total)

        return await self._cached(
            METRIC_REVENUE, user_id, date_range, float, compute, "Failed to calculate total revenue"
        )

    async def get_total_refunds(self, user_id: str, date_range: Optional[DateRange] = None) -> float:
        """Sum of refund and partial refund transactions, optionally only those within the range."""

        async def compute() -> float:
            total = await self.records.sum_transactions(
                user_id,
                [TransactionType.REFUND, TransactionType.PARTIAL_REFUND],
                date_range,
            )
            return float(total)

        return await self._cached(
            METRIC_REFUNDS, user_id, date_range, float, compute, "Failed to calculate total refunds"
        )

    async def get_all_metrics(self, user_id: str, date_range: Optional[DateRange] = None) -> MetricsData:
        """
        Compute all six metrics concurrently.

        The first failing metric's MetricsCalculationError propagates as is.
        """
        mrr, churn, ltv, active_users, total_revenue, total_refunds = await asyncio.gather(
            self.calculate_mrr(user_id, date_range),
            self.calculate_churn_rate(user_id, date_range),
            self.calculate_ltv(user_id, date_range),
            self.get_active_users(user_id, date_range),
            self.get_total_revenue(user_id, date_range),
            self.get_total_refunds(user_id, date_range),
        )

        return MetricsData(
            mrr=mrr,
            churn=churn,
            ltv=ltv,
            active_users=active_users,
            total_revenue=total_revenue,
            total_refunds=total_refunds,
        )

    async def invalidate_cache(self, user_id: str) -> int:
        """
        Drop every cached metric of a user.

        Failures are logged and swallowed: a stale cache expires with its TTL,
        so invalidation must never fail the caller.

        Returns:
            Number of cache entries removed (0 on failure)
        """
        try:
            deleted = await self.cache.invalidate_pattern(user_cache_pattern(user_id), key_filter=owned_by(user_id))
            metric_cache_invalidations_total.labels(status="succeeded").inc()
            logger.info("metrics_cache_invalidated", user_id=user_id, deleted=deleted)
            return deleted
        except Exception as e:
            metric_cache_invalidations_total.labels(status="failed").inc()
            logger.error("metrics_cache_invalidation_failed", user_id=user_id, error=str(e))
            return 0

    async def save_snapshot(
        self,
        user_id: str,
        metrics: MetricsData,
        date_range: Optional[DateRange] = None,
    ) -> Optional[MetricsSnapshot]:
        """
        Persist a metrics read for the user and range.

        Snapshots are a history aid only; a failed write is logged and ignored.
        """
        try:
            snapshot = await self.records.upsert_snapshot(
                user_id,
                date_range_descriptor(date_range),
                {
                    "mrr": Decimal(str(metrics.mrr)),
                    "churn": metrics.churn,
                    "ltv": Decimal(str(metrics.ltv)),
                    "active_users": metrics.active_users,
                    "total_revenue": Decimal(str(metrics.total_revenue)),
                    "total_refunds": Decimal(str(metrics.total_refunds)),
                },
            )
            logger.info("metrics_snapshot_saved", user_id=user_id, date_range=snapshot.date_range)
            return snapshot
        except Exception as e:
            logger.error("metrics_snapshot_failed", user_id=user_id, error=str(e))
            return None

    async def list_snapshots(self, user_id: str, limit: int = 20) -> List[MetricsSnapshot]:
        """Most recent persisted snapshots of a user."""
        return await self.records.list_snapshots(user_id, limit=limit)

