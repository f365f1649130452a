"""PayPal webhook handler for billing subscription and sale events."""
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from subscription_analytics.api.deps import get_records, get_webhook_processor
from subscription_analytics.models.account import PaymentProvider
from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.schemas.webhook import PayPalEvent
from subscription_analytics.services.webhook_processor import WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/paypal", tags=["webhooks"])


@router.post("/{account_id}")
async def handle_paypal_webhook(
    account_id: UUID,
    request: Request,
    records: BillingRecordRepository = Depends(get_records),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Handle incoming PayPal webhook events for a connected account.

    Raises:
        HTTPException: 404 for unknown or inactive accounts, 400 for malformed payloads
    """
    account = await records.get_account(account_id)
    if account is None or not account.is_active or account.provider != PaymentProvider.PAYPAL:
        logger.warning("paypal_webhook_unknown_account", account_id=str(account_id))
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found or inactive")

    body = await request.body()

    try:
        event = PayPalEvent.model_validate_json(body)
        handled = await processor.process_paypal_event(account, event)
    except ValidationError as e:
        logger.error("paypal_webhook_invalid_payload", account_id=str(account_id), error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook processing failed")

    return {"status": "success", "event_type": event.event_type, "handled": handled}
