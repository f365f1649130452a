"""Pydantic schemas for connected accounts and their subscriptions."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from subscription_analytics.models.account import PaymentProvider
from subscription_analytics.models.subscription import BillingCycle, SubscriptionStatus


class Account(BaseModel):
    """Schema for returning connected account data."""

    id: UUID
    user_id: str
    provider: PaymentProvider
    provider_account_id: str
    is_active: bool
    connected_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Subscription(BaseModel):
    """Schema for returning subscription data."""

    id: UUID
    account_id: UUID
    provider_subscription_id: str
    customer_id: str
    plan_id: str
    plan_name: str | None
    start_date: datetime
    end_date: datetime | None
    status: SubscriptionStatus
    price: Decimal
    currency: str
    billing_cycle: BillingCycle

    model_config = ConfigDict(from_attributes=True)


class SubscriptionList(BaseModel):
    """Schema for paginated subscription list."""

    items: list[Subscription]
    total: int
    page: int
    page_size: int
