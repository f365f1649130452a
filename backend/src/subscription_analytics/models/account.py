"""Account model for connected payment-provider accounts."""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, String, UniqueConstraint
from sqlalchemy.orm import relationship
import enum

from subscription_analytics.models.base import Base


class PaymentProvider(enum.Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    PAYPAL = "paypal"


class Account(Base):
    """
    Payment-provider account connected by a dashboard user.

    Subscriptions and transactions synced from the provider hang off this
    account; metrics are aggregated across all accounts owned by ``user_id``.
    """

    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_accounts_user_provider"),)

    user_id = Column(String, nullable=False, index=True)
    provider = Column(SQLEnum(PaymentProvider), nullable=False)
    provider_account_id = Column(String, nullable=False)  # Stripe account id / PayPal merchant id
    is_active = Column(Boolean, nullable=False, default=True)
    connected_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="account", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Account(id={self.id}, user_id={self.user_id}, provider={self.provider.value})>"
