"""Stripe webhook handler for subscription, invoice and refund events."""
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from subscription_analytics.adapters.stripe_adapter import StripeAdapter
from subscription_analytics.api.deps import get_records, get_stripe_adapter, get_webhook_processor
from subscription_analytics.config import settings
from subscription_analytics.exceptions import WebhookVerificationError
from subscription_analytics.models.account import PaymentProvider
from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.services.webhook_processor import WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["webhooks"])


@router.post("/{account_id}")
async def handle_stripe_webhook(
    account_id: UUID,
    request: Request,
    records: BillingRecordRepository = Depends(get_records),
    processor: WebhookProcessor = Depends(get_webhook_processor),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
):
    """
    Handle incoming Stripe webhook events for a connected account.

    Verifies the webhook signature, syncs the affected subscription or
    transaction and then invalidates the account owner's cached metrics.

    Raises:
        HTTPException: 404 for unknown or inactive accounts, 400 if
            verification or payload validation fails
    """
    account = await records.get_account(account_id)
    if account is None or not account.is_active or account.provider != PaymentProvider.STRIPE:
        logger.warning("stripe_webhook_unknown_account", account_id=str(account_id))
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found or inactive")

    body = await request.body()

    try:
        if settings.stripe_verify_signatures:
            signature = request.headers.get("stripe-signature")
            if not signature:
                logger.error("stripe_webhook_missing_signature", account_id=str(account_id))
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe signature")
            event = stripe_adapter.construct_webhook_event(body, signature)
        else:
            event = stripe_adapter.parse_webhook_event(body)
    except WebhookVerificationError as e:
        logger.error("stripe_webhook_verification_failed", account_id=str(account_id), error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook verification failed")

    try:
        handled = await processor.process_stripe_event(account, event)
    except ValidationError as e:
        logger.error("stripe_webhook_invalid_object", event_type=event.type, event_id=event.id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook processing failed")

    return {"status": "success", "event_type": event.type, "handled": handled}
