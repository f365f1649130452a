"""Connected account API endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
import structlog

from subscription_analytics.api.deps import get_current_user, get_metrics_service, get_records
from subscription_analytics.repositories.billing_records import BillingRecordRepository
from subscription_analytics.schemas.account import Account, Subscription, SubscriptionList
from subscription_analytics.services.metrics_service import MetricsService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/accounts")


@router.get("", response_model=list[Account])
async def list_accounts(
    user_id: str = Depends(get_current_user),
    records: BillingRecordRepository = Depends(get_records),
) -> list[Account]:
    """List the payment-provider accounts connected by the current user."""
    accounts = await records.list_accounts(user_id)
    return [Account.model_validate(account) for account in accounts]


@router.delete("/{account_id}", response_model=Account)
async def disconnect_account(
    account_id: UUID,
    user_id: str = Depends(get_current_user),
    records: BillingRecordRepository = Depends(get_records),
    metrics: MetricsService = Depends(get_metrics_service),
) -> Account:
    """
    Disconnect an account.

    The account stops accepting webhooks and the user's cached metrics are
    dropped.
    """
    account = await records.deactivate_account(account_id, user_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Account {account_id} not found")

    await metrics.invalidate_cache(user_id)

    logger.info("account_disconnected", account_id=str(account_id), user_id=user_id)
    return Account.model_validate(account)


@router.get("/{account_id}/subscriptions", response_model=SubscriptionList)
async def list_account_subscriptions(
    account_id: UUID,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    user_id: str = Depends(get_current_user),
    records: BillingRecordRepository = Depends(get_records),
) -> SubscriptionList:
    """List subscriptions synced into an account, most recent first."""
    account = await records.get_account(account_id, user_id=user_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Account {account_id} not found")

    subscriptions, total = await records.list_subscriptions(account_id, page=page, page_size=page_size)
    return SubscriptionList(
        items=[Subscription.model_validate(subscription) for subscription in subscriptions],
        total=total,
        page=page,
        page_size=page_size,
    )
