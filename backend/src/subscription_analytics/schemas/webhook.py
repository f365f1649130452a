"""Pydantic schemas for inbound payment-provider webhook payloads.

Only the fields the sync handlers read are declared; everything else in the
provider payload is ignored.
"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _ProviderPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# Stripe

class StripeRecurring(_ProviderPayload):
    interval: Optional[str] = None


class StripePrice(_ProviderPayload):
    id: str = ""
    nickname: Optional[str] = None
    unit_amount: Optional[int] = None
    recurring: Optional[StripeRecurring] = None


class StripeSubscriptionItem(_ProviderPayload):
    price: Optional[StripePrice] = None


class StripeSubscriptionItems(_ProviderPayload):
    data: list[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(_ProviderPayload):
    """``customer.subscription.*`` event object."""

    id: str
    customer: str
    status: str
    start_date: int
    ended_at: Optional[int] = None
    currency: str = "usd"
    items: StripeSubscriptionItems = Field(default_factory=StripeSubscriptionItems)

    @property
    def first_price(self) -> Optional[StripePrice]:
        if self.items.data:
            return self.items.data[0].price
        return None


class StripeStatusTransitions(_ProviderPayload):
    paid_at: Optional[int] = None


class StripeInvoice(_ProviderPayload):
    """``invoice.*`` event object."""

    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[dict[str, Any]] = None
    status: Optional[str] = None
    amount_paid: int = 0
    currency: str = "usd"
    created: int
    description: Optional[str] = None
    status_transitions: StripeStatusTransitions = Field(default_factory=StripeStatusTransitions)

    @property
    def subscription_id(self) -> Optional[str]:
        """Subscription id, from the legacy field or from ``parent.subscription_details``."""
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return details.get("subscription")


class StripeCharge(_ProviderPayload):
    """``charge.refunded`` event object."""

    id: str
    amount: int
    amount_refunded: int = 0
    currency: str = "usd"
    customer: Optional[str] = None
    invoice: Optional[str] = None
    created: int


class StripeEventData(_ProviderPayload):
    object: dict[str, Any]


class StripeEvent(_ProviderPayload):
    """Stripe webhook envelope."""

    id: str
    type: str
    created: Optional[int] = None
    account: Optional[str] = None
    data: StripeEventData


# PayPal

class PayPalMoney(_ProviderPayload):
    currency_code: str = "USD"
    value: str = "0"


class PayPalLastPayment(_ProviderPayload):
    amount: Optional[PayPalMoney] = None
    time: Optional[str] = None


class PayPalBillingInfo(_ProviderPayload):
    outstanding_balance: Optional[PayPalMoney] = None
    last_payment: Optional[PayPalLastPayment] = None


class PayPalSubscriber(_ProviderPayload):
    payer_id: Optional[str] = None


class PayPalFrequency(_ProviderPayload):
    interval_unit: Optional[str] = None


class PayPalBillingCycle(_ProviderPayload):
    tenure_type: Optional[str] = None
    frequency: Optional[PayPalFrequency] = None


class PayPalPlan(_ProviderPayload):
    name: Optional[str] = None
    billing_cycles: list[PayPalBillingCycle] = Field(default_factory=list)


class PayPalSubscription(_ProviderPayload):
    """``BILLING.SUBSCRIPTION.*`` event resource."""

    id: str
    status: str
    plan_id: str = ""
    start_time: str
    status_update_time: Optional[str] = None
    subscriber: PayPalSubscriber = Field(default_factory=PayPalSubscriber)
    billing_info: PayPalBillingInfo = Field(default_factory=PayPalBillingInfo)
    plan: Optional[PayPalPlan] = None

    @property
    def regular_interval(self) -> Optional[str]:
        """Interval unit of the REGULAR billing cycle when the plan is inlined."""
        if not self.plan:
            return None
        for cycle in self.plan.billing_cycles:
            if cycle.tenure_type == "REGULAR" and cycle.frequency:
                return cycle.frequency.interval_unit
        return None


class PayPalAmount(_ProviderPayload):
    total: str
    currency: str = "USD"


class PayPalSale(_ProviderPayload):
    """``PAYMENT.SALE.*`` event resource (a sale or a refund)."""

    id: str
    amount: PayPalAmount
    billing_agreement_id: Optional[str] = None
    sale_id: Optional[str] = None
    create_time: str


class PayPalEvent(_ProviderPayload):
    """PayPal webhook envelope."""

    id: str
    event_type: str
    resource: dict[str, Any]
