"""Subscription model for provider-side customer subscriptions."""
from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import relationship
import enum

from subscription_analytics.models.base import Base


class SubscriptionStatus(enum.Enum):
    """Canonical subscription status across providers."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    TRIALING = "trialing"


class BillingCycle(enum.Enum):
    """How often a subscription is billed."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Subscription(Base):
    """
    Customer subscription synced from a payment provider.

    Written only by provider sync; the metrics aggregator reads it.
    ``end_date`` is null while the subscription has not ended.
    """

    __tablename__ = "subscriptions"

    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_subscription_id = Column(String, nullable=False, index=True)
    customer_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    plan_name = Column(String, nullable=True)
    start_date = Column(DateTime, nullable=False, index=True)
    end_date = Column(DateTime, nullable=True, index=True)
    status = Column(SQLEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    price = Column(Numeric(12, 2), nullable=False)  # Major currency unit (dollars, not cents)
    currency = Column(String(3), nullable=False, default="USD")
    billing_cycle = Column(SQLEnum(BillingCycle), nullable=False, default=BillingCycle.MONTHLY)

    # Relationships
    account = relationship("Account", back_populates="subscriptions")
    transactions = relationship("Transaction", back_populates="subscription", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Subscription(id={self.id}, account_id={self.account_id}, status={self.status.value})>"
