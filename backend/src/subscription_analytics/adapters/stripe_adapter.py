"""Stripe payment gateway adapter."""
import stripe
from pydantic import ValidationError

from subscription_analytics.config import settings
from subscription_analytics.exceptions import WebhookVerificationError
from subscription_analytics.schemas.webhook import StripeEvent


class StripeAdapter:
    """Adapter for Stripe webhook verification and decoding."""

    def __init__(self, webhook_secret: str | None = None):
        """Initialize Stripe adapter with API key and webhook secret."""
        stripe.api_key = settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    def construct_webhook_event(self, payload: bytes, signature: str) -> StripeEvent:
        """
        Verify a webhook delivery and decode its event.

        Args:
            payload: Raw request body
            signature: ``Stripe-Signature`` header

        Returns:
            Decoded Stripe event

        Raises:
            WebhookVerificationError: If signature verification or decoding fails
        """
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except UnicodeDecodeError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}") from e

        return self.parse_webhook_event(payload)

    @staticmethod
    def parse_webhook_event(payload: bytes) -> StripeEvent:
        """
        Decode a webhook body without signature verification.

        Raises:
            WebhookVerificationError: If the body is not a Stripe event
        """
        try:
            return StripeEvent.model_validate_json(payload)
        except ValidationError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}") from e
