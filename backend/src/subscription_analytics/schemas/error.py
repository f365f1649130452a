"""Structured error response schemas."""
from datetime import datetime
from typing import Any
from pydantic import BaseModel, Field


class ErrorCode:
    """Machine-readable error codes."""

    VALIDATION_ERROR = "validation_error"
    METRIC_CALCULATION_FAILED = "metric_calculation_failed"
    DATABASE_ERROR = "database_error"
    NOT_FOUND = "not_found"
    WEBHOOK_REJECTED = "webhook_rejected"
    RATE_LIMITED = "rate_limited"
    INTERNAL_ERROR = "internal_error"


REMEDIATION_HINTS = {
    ErrorCode.METRIC_CALCULATION_FAILED: "Retry the request; metrics are recomputed from billing records",
    ErrorCode.DATABASE_ERROR: "The database is temporarily unavailable. Please retry after a short delay",
    ErrorCode.RATE_LIMITED: "Wait until the time given in Retry-After before sending more requests",
}


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    Every handler in main.py returns this shape so clients can rely on
    ``error``, ``message`` and ``request_id`` being present.
    """

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'MetricsError')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(default=None, description="Detailed error information")
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")
