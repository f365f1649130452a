"""
Webhook processing for payment-provider events.

Each provider has a closed table of event types it syncs into the billing
record store. A delivery is handled in two steps:

1. Sync: the affected subscription or transaction is upserted and committed
2. Invalidate: the owning user's cached metrics are dropped

Step 2 starts only after step 1 has completed, so the next metric read
recomputes from the updated records. Unknown event types are acknowledged
without touching records or the cache.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional
import structlog

from subscription_analytics.models.account import Account
from subscription_analytics.models.subscription import Subscription, SubscriptionStatus
from subscription_analytics.models.transaction import TransactionType
from subscription_analytics.monitoring import webhook_events_total
from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.schemas.webhook import (
    PayPalEvent,
    PayPalSale,
    PayPalSubscription,
    StripeCharge,
    StripeEvent,
    StripeInvoice,
    StripeSubscription,
)
from subscription_analytics.services.metrics_service import MetricsService
from subscription_analytics.services.normalization import map_billing_cycle, map_paypal_status, map_stripe_status

logger = structlog.get_logger(__name__)

Handler = Callable[[Account, Dict[str, Any]], Awaitable[None]]

CENTS = Decimal(100)

DEFAULT_STRIPE_PLAN_NAME = "Unknown Plan"
DEFAULT_PAYPAL_PLAN_NAME = "PayPal Plan"


def _from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Unix seconds to naive UTC."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    """ISO 8601 (PayPal ``2024-01-15T10:00:00Z``) to naive UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class WebhookProcessor:
    """
    Service that syncs provider webhook events and invalidates metrics.

    Args:
        records: Billing record repository the events are synced into
        metrics: Metrics service whose cache is invalidated after each sync
    """

    def __init__(self, records: BillingRecordRepository, metrics: MetricsService):
        self.records = records
        self.metrics = metrics

        self.stripe_handlers: Dict[str, Handler] = {
            "customer.subscription.created": self._sync_stripe_subscription,
            "customer.subscription.updated": self._sync_stripe_subscription,
            "customer.subscription.deleted": self._sync_stripe_subscription,
            "invoice.payment_succeeded": self._sync_stripe_invoice,
            "invoice.paid": self._sync_stripe_invoice,
            "invoice.payment_failed": self._record_stripe_payment_failure,
            "charge.refunded": self._sync_stripe_refund,
        }
        self.paypal_handlers: Dict[str, Handler] = {
            "BILLING.SUBSCRIPTION.CREATED": self._sync_paypal_subscription,
            "BILLING.SUBSCRIPTION.UPDATED": self._sync_paypal_subscription,
            "BILLING.SUBSCRIPTION.ACTIVATED": self._sync_paypal_subscription,
            "BILLING.SUBSCRIPTION.CANCELLED": self._sync_paypal_subscription,
            "BILLING.SUBSCRIPTION.SUSPENDED": self._sync_paypal_subscription,
            "BILLING.SUBSCRIPTION.EXPIRED": self._sync_paypal_subscription,
            "PAYMENT.SALE.COMPLETED": self._sync_paypal_sale,
            "PAYMENT.SALE.REFUNDED": self._sync_paypal_refund,
        }

    async def process_stripe_event(self, account: Account, event: StripeEvent) -> bool:
        """
        Sync a Stripe event for an account.

        Returns:
            True if the event type is handled, False if it was ignored
        """
        return await self._dispatch("stripe", account, event.id, event.type, event.data.object, self.stripe_handlers)

    async def process_paypal_event(self, account: Account, event: PayPalEvent) -> bool:
        """
        Sync a PayPal event for an account.

        Returns:
            True if the event type is handled, False if it was ignored
        """
        return await self._dispatch(
            "paypal", account, event.id, event.event_type, event.resource, self.paypal_handlers
        )

    async def _dispatch(
        self,
        provider: str,
        account: Account,
        event_id: str,
        event_type: str,
        payload: Dict[str, Any],
        handlers: Dict[str, Handler],
    ) -> bool:
        handler = handlers.get(event_type)
        if handler is None:
            webhook_events_total.labels(provider=provider, event_type="unhandled", outcome="ignored").inc()
            logger.info("webhook_event_unhandled", provider=provider, event_type=event_type, event_id=event_id)
            return False

        logger.info(
            "webhook_event_received",
            provider=provider,
            event_type=event_type,
            event_id=event_id,
            account_id=str(account.id),
        )

        await handler(account, payload)
        await self.metrics.invalidate_cache(account.user_id)

        webhook_events_total.labels(provider=provider, event_type=event_type, outcome="processed").inc()
        logger.info("webhook_event_processed", provider=provider, event_type=event_type, event_id=event_id)
        return True

    # ==================== STRIPE ====================

    async def _sync_stripe_subscription(self, account: Account, payload: Dict[str, Any]) -> None:
        """customer.subscription.* → subscription upsert."""
        subscription = StripeSubscription.model_validate(payload)
        price = subscription.first_price

        await self.records.upsert_subscription(
            account.id,
            {
                "provider_subscription_id": subscription.id,
                "customer_id": subscription.customer,
                "plan_id": price.id if price else "",
                "plan_name": (price.nickname if price else None) or DEFAULT_STRIPE_PLAN_NAME,
                "start_date": _from_unix(subscription.start_date),
                "end_date": _from_unix(subscription.ended_at),
                "status": map_stripe_status(subscription.status),
                "price": Decimal(price.unit_amount or 0) / CENTS if price else Decimal(0),
                "currency": subscription.currency.upper(),
                "billing_cycle": map_billing_cycle(
                    price.recurring.interval if price and price.recurring else None
                ),
            },
        )

    async def _sync_stripe_invoice(self, account: Account, payload: Dict[str, Any]) -> None:
        """invoice.payment_succeeded / invoice.paid → charge upsert keyed by invoice id."""
        invoice = StripeInvoice.model_validate(payload)
        if invoice.status != "paid":
            logger.info("stripe_invoice_not_paid", invoice_id=invoice.id, status=invoice.status)
            return

        subscription = await self._find_subscription(account, invoice.subscription_id, invoice.customer)
        if subscription is None:
            logger.warning("webhook_subscription_not_found", provider="stripe", invoice_id=invoice.id)
            return

        await self.records.upsert_transaction(
            {
                "subscription_id": subscription.id,
                "type": TransactionType.CHARGE,
                "amount": Decimal(invoice.amount_paid) / CENTS,
                "currency": invoice.currency.upper(),
                "occurred_at": _from_unix(invoice.status_transitions.paid_at or invoice.created),
                "description": invoice.description or "Subscription payment",
                "provider_transaction_id": invoice.id,
            }
        )

    async def _record_stripe_payment_failure(self, account: Account, payload: Dict[str, Any]) -> None:
        # The subscription status change arrives as customer.subscription.updated
        invoice = StripeInvoice.model_validate(payload)
        logger.info("stripe_invoice_payment_failed", invoice_id=invoice.id, customer_id=invoice.customer)

    async def _sync_stripe_refund(self, account: Account, payload: Dict[str, Any]) -> None:
        """charge.refunded → refund or partial refund keyed by ``{charge id}_refund``."""
        charge = StripeCharge.model_validate(payload)

        subscription_id = None
        if charge.invoice:
            paid = await self.records.get_transaction_by_provider_id(charge.invoice)
            if paid is not None:
                subscription_id = paid.subscription_id
        if subscription_id is None and charge.customer:
            subscription = await self.records.get_latest_subscription_for_customer(account.id, charge.customer)
            if subscription is not None:
                subscription_id = subscription.id
        if subscription_id is None:
            logger.warning("webhook_subscription_not_found", provider="stripe", charge_id=charge.id)
            return

        full = charge.amount_refunded >= charge.amount
        await self.records.upsert_transaction(
            {
                "subscription_id": subscription_id,
                "type": TransactionType.REFUND if full else TransactionType.PARTIAL_REFUND,
                "amount": Decimal(charge.amount_refunded) / CENTS,
                "currency": charge.currency.upper(),
                "occurred_at": _from_unix(charge.created),
                "description": "Refund" if full else "Partial refund",
                "provider_transaction_id": f"{charge.id}_refund",
            }
        )

    # ==================== PAYPAL ====================

    async def _sync_paypal_subscription(self, account: Account, payload: Dict[str, Any]) -> None:
        """BILLING.SUBSCRIPTION.* → subscription upsert."""
        subscription = PayPalSubscription.model_validate(payload)
        status = map_paypal_status(subscription.status)

        billing = subscription.billing_info
        money = (billing.last_payment.amount if billing.last_payment else None) or billing.outstanding_balance

        await self.records.upsert_subscription(
            account.id,
            {
                "provider_subscription_id": subscription.id,
                "customer_id": subscription.subscriber.payer_id or subscription.id,
                "plan_id": subscription.plan_id,
                "plan_name": (subscription.plan.name if subscription.plan else None) or DEFAULT_PAYPAL_PLAN_NAME,
                "start_date": _from_iso(subscription.start_time),
                "end_date": (
                    _from_iso(subscription.status_update_time) if status == SubscriptionStatus.CANCELED else None
                ),
                "status": status,
                "price": Decimal(money.value) if money else Decimal(0),
                "currency": money.currency_code.upper() if money else "USD",
                "billing_cycle": map_billing_cycle(subscription.regular_interval),
            },
        )

    async def _sync_paypal_sale(self, account: Account, payload: Dict[str, Any]) -> None:
        """PAYMENT.SALE.COMPLETED → charge upsert keyed by sale id."""
        sale = PayPalSale.model_validate(payload)

        subscription = await self._find_subscription(account, sale.billing_agreement_id, None)
        if subscription is None:
            logger.warning("webhook_subscription_not_found", provider="paypal", sale_id=sale.id)
            return

        await self.records.upsert_transaction(
            {
                "subscription_id": subscription.id,
                "type": TransactionType.CHARGE,
                "amount": Decimal(sale.amount.total),
                "currency": sale.amount.currency.upper(),
                "occurred_at": _from_iso(sale.create_time),
                "description": "PayPal subscription payment",
                "provider_transaction_id": sale.id,
            }
        )

    async def _sync_paypal_refund(self, account: Account, payload: Dict[str, Any]) -> None:
        """PAYMENT.SALE.REFUNDED → refund, partial when less than the original sale."""
        refund = PayPalSale.model_validate(payload)
        amount = Decimal(refund.amount.total)

        original = await self.records.get_transaction_by_provider_id(refund.sale_id) if refund.sale_id else None
        if original is not None:
            subscription_id = original.subscription_id
        else:
            subscription = await self._find_subscription(account, refund.billing_agreement_id, None)
            if subscription is None:
                logger.warning("webhook_subscription_not_found", provider="paypal", refund_id=refund.id)
                return
            subscription_id = subscription.id

        partial = original is not None and amount < Decimal(original.amount)
        await self.records.upsert_transaction(
            {
                "subscription_id": subscription_id,
                "type": TransactionType.PARTIAL_REFUND if partial else TransactionType.REFUND,
                "amount": amount,
                "currency": refund.amount.currency.upper(),
                "occurred_at": _from_iso(refund.create_time),
                "description": "Partial refund" if partial else "Refund",
                "provider_transaction_id": refund.id,
            }
        )

    async def _find_subscription(
        self,
        account: Account,
        provider_subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> Optional[Subscription]:
        """Subscription by provider id, falling back to the customer's latest one."""
        if provider_subscription_id:
            subscription = await self.records.get_subscription_by_provider_id(account.id, provider_subscription_id)
            if subscription is not None:
                return subscription
        if customer_id:
            return await self.records.get_latest_subscription_for_customer(account.id, customer_id)
        return None
