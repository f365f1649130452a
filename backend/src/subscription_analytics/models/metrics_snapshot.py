"""
Metrics snapshot model for persisted dashboard reads.

Stores the last full metrics computation per user and date range so the
dashboard can show figures even while the cache is cold.
"""

from datetime import datetime
from sqlalchemy import Column, DateTime, Float, Integer, Numeric, String, UniqueConstraint

from subscription_analytics.models.base import Base


class MetricsSnapshot(Base):
    """
    Point-in-time copy of all six metrics for one user and date range.

    Upserted on (user_id, date_range); ``date_range`` is the same
    ``{start|all}:{end|all}`` descriptor used in cache keys.
    """

    __tablename__ = "metrics_snapshots"
    __table_args__ = (UniqueConstraint("user_id", "date_range", name="uq_metrics_snapshots_user_range"),)

    user_id = Column(String, nullable=False, index=True)
    date_range = Column(String, nullable=False)

    mrr = Column(Numeric(precision=15, scale=2), nullable=False)
    churn = Column(Float, nullable=False, comment="Fraction between 0 and 1")
    ltv = Column(Numeric(precision=15, scale=2), nullable=False)
    active_users = Column(Integer, nullable=False)
    total_revenue = Column(Numeric(precision=15, scale=2), nullable=False)
    total_refunds = Column(Numeric(precision=15, scale=2), nullable=False)

    cached_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<MetricsSnapshot("
            f"user_id={self.user_id}, "
            f"date_range={self.date_range}, "
            f"mrr={self.mrr}"
            f")>"
        )
