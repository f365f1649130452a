"""SQLAlchemy ORM models for the subscription analytics service."""
# Import all models here to ensure they are registered on the metadata

from subscription_analytics.models.base import Base
from subscription_analytics.models.account import Account, PaymentProvider
from subscription_analytics.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from subscription_analytics.models.transaction import Transaction, TransactionType
from subscription_analytics.models.metrics_snapshot import MetricsSnapshot

__all__ = [
    "Base",
    "Account",
    "PaymentProvider",
    "BillingCycle",
    "Subscription",
    "SubscriptionStatus",
    "Transaction",
    "TransactionType",
    "MetricsSnapshot",
]
