"""
Normalization of provider data into the canonical billing schema.

- Subscription prices are projected onto a monthly figure for MRR.
- Provider status strings and billing intervals are mapped through explicit
  lookup tables. Every input maps to exactly one canonical value; unknown
  inputs take the documented default.

The multipliers are fixed: previously cached and reported MRR figures were
computed with the same constants.
"""

from decimal import Decimal
from typing import Optional, Union
import structlog

from subscription_analytics.models.subscription import BillingCycle, SubscriptionStatus

logger = structlog.get_logger(__name__)

DAYS_PER_MONTH = Decimal("30")
WEEKS_PER_MONTH = Decimal("4.33")
MONTHS_PER_YEAR = Decimal("12")

STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "trialing": SubscriptionStatus.TRIALING,
}

PAYPAL_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "trialing": SubscriptionStatus.TRIALING,
    "suspended": SubscriptionStatus.PAST_DUE,
    "expired": SubscriptionStatus.CANCELED,
}

# Providers occasionally introduce new statuses; until they are mapped they
# count as active, matching the behaviour of the existing dashboards.
DEFAULT_STATUS = SubscriptionStatus.ACTIVE

BILLING_INTERVAL_MAP: dict[str, BillingCycle] = {
    "day": BillingCycle.DAILY,
    "week": BillingCycle.WEEKLY,
    "month": BillingCycle.MONTHLY,
    "year": BillingCycle.YEARLY,
}

DEFAULT_BILLING_CYCLE = BillingCycle.MONTHLY


def normalize_to_monthly_revenue(
    amount: Union[Decimal, int, float, str],
    billing_cycle: Optional[BillingCycle],
) -> Decimal:
    """
    Project a subscription price onto a monthly amount.

    Args:
        amount: Price per billing cycle in major currency units
        billing_cycle: Cycle the price is charged on

    Returns:
        Monthly amount. Unrecognized cycles are treated as already monthly.
    """
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))

    if billing_cycle == BillingCycle.DAILY:
        return value * DAYS_PER_MONTH
    if billing_cycle == BillingCycle.WEEKLY:
        return value * WEEKS_PER_MONTH
    if billing_cycle == BillingCycle.MONTHLY:
        return value
    if billing_cycle == BillingCycle.YEARLY:
        return value / MONTHS_PER_YEAR
    return value


def _map_status(provider: str, status: Optional[str], table: dict[str, SubscriptionStatus]) -> SubscriptionStatus:
    key = (status or "").strip().lower()
    mapped = table.get(key)
    if mapped is None:
        logger.warning("unmapped_subscription_status", provider=provider, status=status, default=DEFAULT_STATUS.value)
        return DEFAULT_STATUS
    return mapped


def map_stripe_status(status: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the canonical status."""
    return _map_status("stripe", status, STRIPE_STATUS_MAP)


def map_paypal_status(status: Optional[str]) -> SubscriptionStatus:
    """Map a PayPal subscription status (any case) onto the canonical status."""
    return _map_status("paypal", status, PAYPAL_STATUS_MAP)


def map_billing_cycle(interval: Optional[str]) -> BillingCycle:
    """
    Map a provider billing interval onto a billing cycle.

    Accepts Stripe (``month``) and PayPal (``MONTH``) spellings; anything else,
    including a missing interval, is monthly.
    """
    return BILLING_INTERVAL_MAP.get((interval or "").strip().lower(), DEFAULT_BILLING_CYCLE)
