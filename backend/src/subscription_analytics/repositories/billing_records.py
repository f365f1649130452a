"""
Billing record repository.

All SQL issued against accounts, subscriptions, transactions and metric
snapshots lives here. Each method opens its own short-lived session from the
factory, so independent reads can be awaited concurrently.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_analytics.models.account import Account
from subscription_analytics.models.metrics_snapshot import MetricsSnapshot
from subscription_analytics.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from subscription_analytics.models.transaction import Transaction, TransactionType
from subscription_analytics.schemas.metrics import DateRange


def _overlaps(date_range: DateRange):
    """Subscription interval intersects the range."""
    return (
        Subscription.start_date <= date_range.end,
        or_(Subscription.end_date.is_(None), Subscription.end_date >= date_range.start),
    )


class BillingRecordRepository:
    """
    Repository for billing records.

    Provides the filtered counts, sums and lists the metrics service
    aggregates, plus the idempotent upserts used by webhook sync.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize repository with a session factory."""
        self.session_factory = session_factory

    # ==================== METRIC QUERIES ====================

    async def list_active_subscription_prices(
        self,
        user_id: str,
        started_within: Optional[DateRange] = None,
    ) -> List[Tuple[Decimal, BillingCycle]]:
        """
        Prices and billing cycles of active subscriptions.

        Args:
            user_id: Owning dashboard user
            started_within: Keep only subscriptions whose start_date is in this range

        Returns:
            List of (price, billing_cycle)
        """
        stmt = (
            select(Subscription.price, Subscription.billing_cycle)
            .join(Account, Subscription.account_id == Account.id)
            .where(Account.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)
        )
        if started_within is not None:
            stmt = stmt.where(
                Subscription.start_date >= started_within.start,
                Subscription.start_date <= started_within.end,
            )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [(row.price, row.billing_cycle) for row in result]

    async def count_subscriptions_alive_at(self, user_id: str, instant: datetime) -> int:
        """Subscriptions of any status that had started and not yet ended at ``instant``."""
        stmt = (
            select(func.count(Subscription.id))
            .join(Account, Subscription.account_id == Account.id)
            .where(
                Account.user_id == user_id,
                Subscription.start_date <= instant,
                or_(Subscription.end_date.is_(None), Subscription.end_date >= instant),
            )
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar() or 0

    async def count_canceled_between(self, user_id: str, date_range: DateRange) -> int:
        """Canceled subscriptions whose end_date falls within the range."""
        stmt = (
            select(func.count(Subscription.id))
            .join(Account, Subscription.account_id == Account.id)
            .where(
                Account.user_id == user_id,
                Subscription.status == SubscriptionStatus.CANCELED,
                Subscription.end_date >= date_range.start,
                Subscription.end_date <= date_range.end,
            )
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar() or 0

    async def count_active_subscriptions(self, user_id: str, overlapping: Optional[DateRange] = None) -> int:
        """
        Active subscriptions, optionally only those whose interval overlaps a range.

        Args:
            user_id: Owning dashboard user
            overlapping: Range the subscription interval must intersect

        Returns:
            Subscription count
        """
        stmt = (
            select(func.count(Subscription.id))
            .join(Account, Subscription.account_id == Account.id)
            .where(Account.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)
        )
        if overlapping is not None:
            stmt = stmt.where(*_overlaps(overlapping))

        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar() or 0

    async def list_subscription_lifespans(self, user_id: str) -> List[Tuple[datetime, Optional[datetime]]]:
        """(start_date, end_date) of every active or canceled subscription."""
        stmt = (
            select(Subscription.start_date, Subscription.end_date)
            .join(Account, Subscription.account_id == Account.id)
            .where(
                Account.user_id == user_id,
                Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED]),
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [(row.start_date, row.end_date) for row in result]

    async def sum_transactions(
        self,
        user_id: str,
        types: Iterable[TransactionType],
        date_range: Optional[DateRange] = None,
    ) -> Decimal:
        """
        Sum of transaction amounts of the given types.

        Args:
            user_id: Owning dashboard user
            types: Transaction types to include
            date_range: Keep only transactions that occurred within this range

        Returns:
            Total amount (0 when nothing matches)
        """
        stmt = (
            select(func.sum(Transaction.amount))
            .join(Subscription, Transaction.subscription_id == Subscription.id)
            .join(Account, Subscription.account_id == Account.id)
            .where(Account.user_id == user_id, Transaction.type.in_(list(types)))
        )
        if date_range is not None:
            stmt = stmt.where(
                Transaction.occurred_at >= date_range.start,
                Transaction.occurred_at <= date_range.end,
            )

        async with self.session_factory() as session:
            total = (await session.execute(stmt)).scalar()
            return Decimal(total) if total is not None else Decimal(0)

    async def plan_distribution(self, user_id: str, date_range: DateRange) -> List[Tuple[Optional[str], int, Decimal]]:
        """Active subscriptions overlapping the range, grouped by plan name: (plan_name, count, price sum)."""
        stmt = (
            select(
                Subscription.plan_name,
                func.count(Subscription.id).label("subscriptions"),
                func.sum(Subscription.price).label("revenue"),
            )
            .join(Account, Subscription.account_id == Account.id)
            .where(
                Account.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                *_overlaps(date_range),
            )
            .group_by(Subscription.plan_name)
            .order_by(Subscription.plan_name)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [(row.plan_name, row.subscriptions, row.revenue or Decimal(0)) for row in result]

    # ==================== ACCOUNTS ====================

    async def get_account(self, account_id: UUID, user_id: Optional[str] = None) -> Optional[Account]:
        """
        Get account by ID.

        Args:
            account_id: Account UUID
            user_id: When given, the account must belong to this user

        Returns:
            Account or None if not found
        """
        stmt = select(Account).where(Account.id == account_id)
        if user_id is not None:
            stmt = stmt.where(Account.user_id == user_id)

        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def list_accounts(self, user_id: str) -> List[Account]:
        """Accounts connected by a user, newest first."""
        stmt = select(Account).where(Account.user_id == user_id).order_by(Account.connected_at.desc())
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def add_account(self, **fields: Any) -> Account:
        """Persist a new connected account."""
        async with self.session_factory() as session:
            account = Account(**fields)
            session.add(account)
            await session.commit()
            await session.refresh(account)
            return account

    async def deactivate_account(self, account_id: UUID, user_id: str) -> Optional[Account]:
        """Mark a user's account inactive; returns None when it does not exist."""
        async with self.session_factory() as session:
            account = (
                await session.execute(select(Account).where(Account.id == account_id, Account.user_id == user_id))
            ).scalar_one_or_none()
            if account is None:
                return None

            account.is_active = False
            await session.commit()
            await session.refresh(account)
            return account

    async def list_subscriptions(
        self,
        account_id: UUID,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Subscription], int]:
        """
        Page through an account's subscriptions, most recent start first.

        Returns:
            (subscriptions on the page, total count)
        """
        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.count(Subscription.id)).where(Subscription.account_id == account_id)
                )
            ).scalar() or 0

            result = await session.execute(
                select(Subscription)
                .where(Subscription.account_id == account_id)
                .order_by(Subscription.start_date.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), total

    # ==================== SYNC ====================

    async def get_subscription_by_provider_id(
        self,
        account_id: UUID,
        provider_subscription_id: str,
    ) -> Optional[Subscription]:
        """Find a synced subscription by its provider-side id."""
        stmt = select(Subscription).where(
            Subscription.account_id == account_id,
            Subscription.provider_subscription_id == provider_subscription_id,
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalars().first()

    async def get_latest_subscription_for_customer(self, account_id: UUID, customer_id: str) -> Optional[Subscription]:
        """Most recently started subscription of a provider customer."""
        stmt = (
            select(Subscription)
            .where(Subscription.account_id == account_id, Subscription.customer_id == customer_id)
            .order_by(Subscription.start_date.desc())
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalars().first()

    async def upsert_subscription(self, account_id: UUID, fields: Dict[str, Any]) -> Subscription:
        """
        Create or update a subscription keyed by (account_id, provider_subscription_id).

        Args:
            account_id: Account the subscription is synced into
            fields: Column values; must include provider_subscription_id

        Returns:
            Persisted subscription
        """
        async with self.session_factory() as session:
            subscription = (
                await session.execute(
                    select(Subscription).where(
                        Subscription.account_id == account_id,
                        Subscription.provider_subscription_id == fields["provider_subscription_id"],
                    )
                )
            ).scalars().first()

            if subscription is None:
                subscription = Subscription(account_id=account_id, **fields)
                session.add(subscription)
            else:
                for name, value in fields.items():
                    setattr(subscription, name, value)

            await session.commit()
            await session.refresh(subscription)
            return subscription

    async def get_transaction_by_provider_id(self, provider_transaction_id: str) -> Optional[Transaction]:
        """Find a recorded transaction by its provider-side id."""
        stmt = select(Transaction).where(Transaction.provider_transaction_id == provider_transaction_id)
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def upsert_transaction(self, fields: Dict[str, Any]) -> Transaction:
        """
        Create or update a transaction keyed by provider_transaction_id.

        Redelivered webhooks therefore never double-count revenue.
        """
        async with self.session_factory() as session:
            transaction = (
                await session.execute(
                    select(Transaction).where(
                        Transaction.provider_transaction_id == fields["provider_transaction_id"]
                    )
                )
            ).scalar_one_or_none()

            if transaction is None:
                transaction = Transaction(**fields)
                session.add(transaction)
            else:
                for name, value in fields.items():
                    setattr(transaction, name, value)

            await session.commit()
            await session.refresh(transaction)
            return transaction

    # ==================== SNAPSHOTS ====================

    async def upsert_snapshot(self, user_id: str, date_range: str, values: Dict[str, Any]) -> MetricsSnapshot:
        """Create or replace the snapshot for (user_id, date_range)."""
        async with self.session_factory() as session:
            snapshot = (
                await session.execute(
                    select(MetricsSnapshot).where(
                        MetricsSnapshot.user_id == user_id,
                        MetricsSnapshot.date_range == date_range,
                    )
                )
            ).scalar_one_or_none()

            if snapshot is None:
                snapshot = MetricsSnapshot(user_id=user_id, date_range=date_range, **values)
                session.add(snapshot)
            else:
                for name, value in values.items():
                    setattr(snapshot, name, value)
                snapshot.cached_at = datetime.utcnow()

            await session.commit()
            await session.refresh(snapshot)
            return snapshot

    async def list_snapshots(self, user_id: str, limit: int = 20) -> List[MetricsSnapshot]:
        """Most recent snapshots of a user."""
        stmt = (
            select(MetricsSnapshot)
            .where(MetricsSnapshot.user_id == user_id)
            .order_by(MetricsSnapshot.cached_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())
