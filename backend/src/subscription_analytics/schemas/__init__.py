"""Pydantic schemas for API request/response validation."""

from subscription_analytics.schemas.account import Account, Subscription, SubscriptionList
from subscription_analytics.schemas.error import ErrorCode, ErrorDetail, ErrorResponse
from subscription_analytics.schemas.metrics import (
    ChartDataPoint,
    DashboardData,
    DashboardSummary,
    DateRange,
    MetricsData,
    MetricsSnapshot,
    PlanDistributionItem,
)
from subscription_analytics.schemas.webhook import PayPalEvent, StripeEvent

__all__ = [
    # Account schemas
    "Account",
    "Subscription",
    "SubscriptionList",
    # Error schemas
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    # Metrics schemas
    "ChartDataPoint",
    "DashboardData",
    "DashboardSummary",
    "DateRange",
    "MetricsData",
    "MetricsSnapshot",
    "PlanDistributionItem",
    # Webhook schemas
    "PayPalEvent",
    "StripeEvent",
]
