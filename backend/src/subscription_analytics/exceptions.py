"""Domain exceptions raised by services and mapped to HTTP responses in main.py."""


class MetricsCalculationError(Exception):
    """A metric could not be computed from the billing records."""

    def __init__(self, metric: str, message: str):
        super().__init__(message)
        self.metric = metric
        self.message = message


class WebhookVerificationError(ValueError):
    """A webhook delivery failed signature or payload validation."""
