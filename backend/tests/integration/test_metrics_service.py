"""Integration tests for metric calculation, caching and invalidation."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from subscription_analytics.cache import InMemoryCache, metric_cache_key
from subscription_analytics.exceptions import MetricsCalculationError
from subscription_analytics.models.account import Account
from subscription_analytics.models.subscription import BillingCycle, SubscriptionStatus
from subscription_analytics.models.transaction import TransactionType
from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.schemas.metrics import DateRange, MetricsData
from subscription_analytics.services.metrics_service import MetricsService

from utils.factories import AccountFactory, SubscriptionFactory, TransactionFactory


def _count_calls(monkeypatch, target, name: str) -> list:
    """Wrap an async method so every call is recorded."""
    calls = []
    original = getattr(target, name)

    async def wrapper(*args, **kwargs):
        calls.append(args)
        return await original(*args, **kwargs)

    monkeypatch.setattr(target, name, wrapper)
    return calls


class UnavailableCache(InMemoryCache):
    """Cache whose pattern invalidation always fails."""

    async def invalidate_pattern(self, pattern: str, key_filter=None) -> int:
        raise ConnectionError("cache unavailable")


# ==================== MRR ====================


@pytest.mark.asyncio
async def test_mrr_normalizes_each_billing_cycle(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    """MRR sums active subscription prices projected onto a month."""
    for price, cycle in [
        (Decimal("1200"), BillingCycle.YEARLY),
        (Decimal("100"), BillingCycle.WEEKLY),
        (Decimal("50"), BillingCycle.MONTHLY),
        (Decimal("10"), BillingCycle.DAILY),
    ]:
        await records.upsert_subscription(
            stripe_account.id, SubscriptionFactory.create({"price": price, "billing_cycle": cycle})
        )

    mrr = await metrics_service.calculate_mrr(user_id)

    assert mrr == pytest.approx(100 + 433 + 50 + 300)


@pytest.mark.asyncio
async def test_mrr_counts_only_active_subscriptions(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"price": Decimal("29.99")}))
    for status in [SubscriptionStatus.CANCELED, SubscriptionStatus.PAST_DUE, SubscriptionStatus.TRIALING]:
        await records.upsert_subscription(
            stripe_account.id, SubscriptionFactory.create({"price": Decimal("500"), "status": status})
        )

    assert await metrics_service.calculate_mrr(user_id) == pytest.approx(29.99)


@pytest.mark.asyncio
async def test_mrr_is_scoped_to_the_owning_user(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    """Subscriptions of another user's accounts never leak into a user's metrics."""
    other = await records.add_account(**AccountFactory.create({"user_id": "someone-else"}))
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"price": Decimal("10")}))
    await records.upsert_subscription(other.id, SubscriptionFactory.create({"price": Decimal("90")}))

    assert await metrics_service.calculate_mrr(user_id) == pytest.approx(10)
    assert await metrics_service.calculate_mrr("someone-else") == pytest.approx(90)


@pytest.mark.asyncio
async def test_mrr_with_range_filters_on_start_date(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    """With a range, only subscriptions that started inside it contribute."""
    date_range = DateRange(start=datetime(2024, 3, 1), end=datetime(2024, 3, 31, 23, 59, 59))
    await records.upsert_subscription(
        stripe_account.id, SubscriptionFactory.create({"price": Decimal("20"), "start_date": datetime(2024, 3, 10)})
    )
    await records.upsert_subscription(
        stripe_account.id, SubscriptionFactory.create({"price": Decimal("70"), "start_date": datetime(2024, 1, 10)})
    )

    assert await metrics_service.calculate_mrr(user_id, date_range) == pytest.approx(20)
    assert await metrics_service.calculate_mrr(user_id) == pytest.approx(90)


@pytest.mark.asyncio
async def test_metrics_for_user_without_accounts_are_zero(metrics_service: MetricsService) -> None:
    data = await metrics_service.get_all_metrics("nobody")

    assert data == MetricsData(mrr=0, churn=0, ltv=0, active_users=0, total_revenue=0, total_refunds=0)


# ==================== CHURN ====================


@pytest.mark.asyncio
async def test_churn_rate_is_canceled_over_alive_at_start(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    """One of four subscriptions alive at the range start is canceled inside the range."""
    date_range = DateRange(start=datetime(2024, 6, 1), end=datetime(2024, 6, 30))
    for _ in range(3):
        await records.upsert_subscription(
            stripe_account.id, SubscriptionFactory.create({"start_date": datetime(2024, 1, 1)})
        )
    await records.upsert_subscription(
        stripe_account.id,
        SubscriptionFactory.create(
            {
                "start_date": datetime(2024, 2, 1),
                "end_date": datetime(2024, 6, 15),
                "status": SubscriptionStatus.CANCELED,
            }
        ),
    )
    # Started after the range start: not part of the base
    await records.upsert_subscription(
        stripe_account.id, SubscriptionFactory.create({"start_date": datetime(2024, 6, 10)})
    )

    assert await metrics_service.calculate_churn_rate(user_id, date_range) == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_churn_is_zero_without_range_or_base(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    """Churn without a range, or with nothing alive at the start, is 0."""
    await records.upsert_subscription(
        stripe_account.id,
        SubscriptionFactory.create(
            {
                "start_date": datetime(2024, 6, 5),
                "end_date": datetime(2024, 6, 20),
                "status": SubscriptionStatus.CANCELED,
            }
        ),
    )

    assert await metrics_service.calculate_churn_rate(user_id) == 0
    assert await metrics_service.calculate_churn_rate(
        user_id, DateRange(start=datetime(2024, 6, 1), end=datetime(2024, 6, 30))
    ) == 0


# ==================== ACTIVE USERS / LTV ====================


@pytest.mark.asyncio
async def test_active_users_overlap_the_range(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    date_range = DateRange(start=datetime(2024, 6, 1), end=datetime(2024, 6, 30))
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"start_date": datetime(2024, 1, 1)}))
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"start_date": datetime(2024, 6, 29)}))
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"start_date": datetime(2024, 7, 2)}))

    assert await metrics_service.get_active_users(user_id, date_range) == 2
    assert await metrics_service.get_active_users(user_id) == 3


@pytest.mark.asyncio
async def test_ltv_is_arpu_times_average_lifespan(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    """One $30/month subscription running for 60 days: ARPU 30 * 2 months."""
    await records.upsert_subscription(
        stripe_account.id,
        SubscriptionFactory.create({"price": Decimal("30"), "start_date": datetime.utcnow() - timedelta(days=60)}),
    )

    assert await metrics_service.calculate_ltv(user_id) == pytest.approx(60, rel=1e-3)


@pytest.mark.asyncio
async def test_ltv_averages_canceled_lifespans(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    """Canceled subscriptions count toward the lifespan but not toward ARPU."""
    await records.upsert_subscription(
        stripe_account.id,
        SubscriptionFactory.create({"price": Decimal("40"), "start_date": datetime.utcnow() - timedelta(days=30)}),
    )
    await records.upsert_subscription(
        stripe_account.id,
        SubscriptionFactory.create(
            {
                "price": Decimal("40"),
                "start_date": datetime(2023, 1, 1),
                "end_date": datetime(2023, 1, 1) + timedelta(days=150),
                "status": SubscriptionStatus.CANCELED,
            }
        ),
    )

    # ARPU 40, lifespan (1 + 5) / 2 = 3 months
    assert await metrics_service.calculate_ltv(user_id) == pytest.approx(120, rel=1e-3)


# ==================== REVENUE / REFUNDS ====================


@pytest.mark.asyncio
async def test_revenue_and_refunds_sum_by_type(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    subscription = await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create())
    for transaction_type, amount in [
        (TransactionType.CHARGE, "100.00"),
        (TransactionType.CHARGE, "49.99"),
        (TransactionType.REFUND, "20.00"),
        (TransactionType.PARTIAL_REFUND, "5.50"),
    ]:
        await records.upsert_transaction(
            TransactionFactory.create(
                {"subscription_id": subscription.id, "type": transaction_type, "amount": Decimal(amount)}
            )
        )

    assert await metrics_service.get_total_revenue(user_id) == pytest.approx(149.99)
    assert await metrics_service.get_total_refunds(user_id) == pytest.approx(25.50)


@pytest.mark.asyncio
async def test_revenue_with_range_filters_on_occurred_at(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    subscription = await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create())
    await records.upsert_transaction(
        TransactionFactory.create(
            {"subscription_id": subscription.id, "amount": Decimal("10"), "occurred_at": datetime(2024, 5, 15)}
        )
    )
    await records.upsert_transaction(
        TransactionFactory.create(
            {"subscription_id": subscription.id, "amount": Decimal("99"), "occurred_at": datetime(2024, 4, 15)}
        )
    )

    may = DateRange(start=datetime(2024, 5, 1), end=datetime(2024, 5, 31))
    assert await metrics_service.get_total_revenue(user_id, may) == pytest.approx(10)


# ==================== CACHE ====================


@pytest.mark.asyncio
async def test_repeated_reads_hit_the_cache(
    monkeypatch,
    metrics_service: MetricsService,
    records: BillingRecordRepository,
    stripe_account: Account,
    user_id: str,
) -> None:
    """A second read within the TTL returns the cached value without querying the store."""
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"price": Decimal("29.99")}))
    calls = _count_calls(monkeypatch, records, "list_active_subscription_prices")

    first = await metrics_service.calculate_mrr(user_id)
    second = await metrics_service.calculate_mrr(user_id)

    assert first == second == pytest.approx(29.99)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_cached_values_are_stored_as_text(
    metrics_service: MetricsService, cache: InMemoryCache, records: BillingRecordRepository,
    stripe_account: Account, user_id: str,
) -> None:
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"price": Decimal("29.99")}))

    await metrics_service.calculate_mrr(user_id)
    await metrics_service.get_active_users(user_id)

    assert await cache.get(metric_cache_key("mrr", user_id)) == "29.99"
    assert await cache.get(metric_cache_key("active_users", user_id)) == "1"


@pytest.mark.asyncio
async def test_cache_serves_stale_value_until_invalidated(
    monkeypatch,
    metrics_service: MetricsService,
    records: BillingRecordRepository,
    stripe_account: Account,
    user_id: str,
) -> None:
    """After invalidation the next read recomputes from the store."""
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"price": Decimal("10")}))
    calls = _count_calls(monkeypatch, records, "list_active_subscription_prices")

    assert await metrics_service.calculate_mrr(user_id) == pytest.approx(10)

    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"price": Decimal("15")}))
    assert await metrics_service.calculate_mrr(user_id) == pytest.approx(10)

    await metrics_service.invalidate_cache(user_id)

    assert await metrics_service.calculate_mrr(user_id) == pytest.approx(25)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_invalidation_only_touches_the_given_user(
    metrics_service: MetricsService, cache: InMemoryCache, user_id: str
) -> None:
    await metrics_service.get_all_metrics(user_id)
    await metrics_service.get_all_metrics("other-user")

    deleted = await metrics_service.invalidate_cache(user_id)

    # mrr, ltv, active_users, revenue, refunds; churn is not cached without a range
    assert deleted == 5
    assert await cache.get(metric_cache_key("mrr", user_id)) is None
    assert await cache.get(metric_cache_key("mrr", "other-user")) == "0.0"


@pytest.mark.asyncio
async def test_invalidation_failure_is_swallowed(records: BillingRecordRepository, user_id: str) -> None:
    service = MetricsService(records, UnavailableCache(default_ttl=60))

    assert await service.invalidate_cache(user_id) == 0


# ==================== FAILURES ====================


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "method,repository_method,metric,message",
    [
        ("calculate_mrr", "list_active_subscription_prices", "mrr", "Failed to calculate MRR"),
        ("get_active_users", "count_active_subscriptions", "active_users", "Failed to get active users"),
        ("get_total_revenue", "sum_transactions", "revenue", "Failed to calculate total revenue"),
        ("get_total_refunds", "sum_transactions", "refunds", "Failed to calculate total refunds"),
    ],
)
async def test_store_failures_are_wrapped(
    monkeypatch,
    metrics_service: MetricsService,
    records: BillingRecordRepository,
    user_id: str,
    method: str,
    repository_method: str,
    metric: str,
    message: str,
) -> None:
    """Store errors surface as MetricsCalculationError naming the metric."""

    async def broken(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(records, repository_method, broken)

    with pytest.raises(MetricsCalculationError) as exc_info:
        await getattr(metrics_service, method)(user_id)

    assert exc_info.value.metric == metric
    assert exc_info.value.message == message


@pytest.mark.asyncio
async def test_churn_failure_is_wrapped(
    monkeypatch, metrics_service: MetricsService, records: BillingRecordRepository, user_id: str
) -> None:
    async def broken(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(records, "count_subscriptions_alive_at", broken)

    with pytest.raises(MetricsCalculationError, match="Failed to calculate churn rate"):
        await metrics_service.calculate_churn_rate(
            user_id, DateRange(start=datetime(2024, 1, 1), end=datetime(2024, 1, 31))
        )


@pytest.mark.asyncio
async def test_ltv_failure_is_wrapped(
    monkeypatch, metrics_service: MetricsService, records: BillingRecordRepository, user_id: str
) -> None:
    async def broken(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(records, "list_subscription_lifespans", broken)

    with pytest.raises(MetricsCalculationError) as exc_info:
        await metrics_service.calculate_ltv(user_id)

    assert exc_info.value.metric == "ltv"
    assert exc_info.value.message == "Failed to calculate LTV"


@pytest.mark.asyncio
async def test_get_all_metrics_propagates_the_failing_metric(
    monkeypatch, metrics_service: MetricsService, records: BillingRecordRepository, user_id: str
) -> None:
    async def broken(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(records, "sum_transactions", broken)

    with pytest.raises(MetricsCalculationError) as exc_info:
        await metrics_service.get_all_metrics(user_id)

    assert exc_info.value.metric in {"revenue", "refunds"}


# ==================== SNAPSHOTS ====================


@pytest.mark.asyncio
async def test_snapshots_are_upserted_per_range(
    metrics_service: MetricsService, records: BillingRecordRepository, stripe_account: Account, user_id: str
) -> None:
    await records.upsert_subscription(stripe_account.id, SubscriptionFactory.create({"price": Decimal("12")}))

    data = await metrics_service.get_all_metrics(user_id)
    await metrics_service.save_snapshot(user_id, data)
    await metrics_service.save_snapshot(user_id, data.model_copy(update={"mrr": 13.0}))

    snapshots = await metrics_service.list_snapshots(user_id)

    assert len(snapshots) == 1
    assert snapshots[0].date_range == "all:all"
    assert snapshots[0].mrr == Decimal("13.00")
    assert snapshots[0].active_users == 1
