"""Transaction model for monetary events on a subscription."""
from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship
import enum

from subscription_analytics.models.base import Base


class TransactionType(enum.Enum):
    """Kind of monetary event."""

    CHARGE = "charge"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"


class Transaction(Base):
    """
    Charge or refund recorded against a subscription.

    ``amount`` is always a positive magnitude; ``type`` carries the sign.
    Upserted by ``provider_transaction_id`` so redelivered webhooks are idempotent.
    """

    __tablename__ = "transactions"

    subscription_id = Column(
        Uuid(as_uuid=True), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = Column(SQLEnum(TransactionType), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    occurred_at = Column(DateTime, nullable=False, index=True)
    description = Column(Text, nullable=True)
    provider_transaction_id = Column(String, nullable=False, unique=True, index=True)

    # Relationships
    subscription = relationship("Subscription", back_populates="transactions")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Transaction(id={self.id}, type={self.type.value}, amount={self.amount})>"
