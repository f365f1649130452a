"""Pydantic schemas for metric values, date ranges and dashboard data."""
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DateRange(BaseModel):
    """Inclusive date range used to scope metric queries.

    Timezone-aware bounds are converted to naive UTC to match the stored columns.
    """

    model_config = ConfigDict(frozen=True)

    start: datetime = Field(..., description="Range start (inclusive)")
    end: datetime = Field(..., description="Range end (inclusive)")

    @field_validator("start", "end")
    @classmethod
    def _to_naive_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self

    def previous_period(self) -> "DateRange":
        """Range of equal length that ends where this one starts."""
        return DateRange(start=self.start - (self.end - self.start), end=self.start)


class MetricsData(BaseModel):
    """All six metrics for one user and date range."""

    mrr: float = Field(..., description="Monthly Recurring Revenue")
    churn: float = Field(..., ge=0, description="Churn rate as a fraction (0..1)")
    ltv: float = Field(..., description="Customer Lifetime Value")
    active_users: int = Field(..., ge=0, description="Active subscriptions")
    total_revenue: float = Field(..., description="Sum of charges")
    total_refunds: float = Field(..., description="Sum of refunds and partial refunds")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "mrr": 12500.0,
                "churn": 0.025,
                "ltv": 4500.0,
                "active_users": 420,
                "total_revenue": 38100.5,
                "total_refunds": 310.0,
            }
        }
    )


class ChartDataPoint(BaseModel):
    """One point of a dashboard time series."""

    date: str = Field(..., description="Day (YYYY-MM-DD)")
    value: float


class PlanDistributionItem(BaseModel):
    """Active subscriptions grouped by plan."""

    plan_name: str
    count: int
    revenue: float


class DashboardSummary(BaseModel):
    """Headline figures shown above the dashboard charts."""

    current_mrr: float
    mrr_growth: float = Field(..., description="MRR change vs previous period (%)")
    churn_rate: float = Field(..., description="Churn rate (%)")
    active_subscriptions: int
    total_revenue: float


class DashboardData(BaseModel):
    """Full dashboard payload."""

    mrr_chart: list[ChartDataPoint]
    churn_chart: list[ChartDataPoint]
    revenue_chart: list[ChartDataPoint]
    plan_distribution: list[PlanDistributionItem]
    summary: DashboardSummary


class MetricsSnapshot(BaseModel):
    """Persisted metrics read."""

    user_id: str
    date_range: str
    mrr: float
    churn: float
    ltv: float
    active_users: int
    total_revenue: float
    total_refunds: float
    cached_at: datetime

    model_config = ConfigDict(from_attributes=True)
