"""
Webhook Signature Verifier
==========================
Authenticates Stripe webhook deliveries against the Test secret first and
the Live secret second, so one endpoint serves both accounts. The secret
that verifies decides the event's mode.

pip install stripe structlog
"""

import json
from typing import Any, Optional

import stripe
import structlog
from pydantic import BaseModel

from config import Settings
from errors import AuthenticationError, InvalidPayloadError
from schemas.fulfillment import PaymentMode


class VerifiedEvent(BaseModel):
    event: dict[str, Any]
    mode: PaymentMode

    @property
    def event_type(self) -> str:
        return self.event.get("type", "unknown")

    @property
    def data_object(self) -> dict[str, Any]:
        return (self.event.get("data") or {}).get("object") or {}


class SignatureVerifier:
    """Try each configured webhook secret in order until one verifies."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._logger = structlog.get_logger().bind(component="signature_verifier")

    def _secrets(self) -> list[tuple[PaymentMode, str]]:
        return [
            (PaymentMode.TEST, self.settings.stripe_webhook_secret_test),
            (PaymentMode.LIVE, self.settings.stripe_webhook_secret_live),
        ]

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> VerifiedEvent:
        """
        Verify the raw request bytes.

        Raises ConfigurationError before any attempt when a secret is missing,
        AuthenticationError when neither secret verifies, and
        InvalidPayloadError when the signed body is not a JSON event.
        """
        self.settings.require_webhook_secrets()

        if not signature_header:
            self._logger.warning("webhook_signature_missing")
            raise AuthenticationError("No Stripe signature found")

        for mode, secret in self._secrets():
            try:
                stripe.Webhook.construct_event(raw_body, signature_header, secret)
            except stripe.SignatureVerificationError as e:
                self._logger.info("webhook_signature_rejected", mode=mode.value, error=str(e))
                continue
            except ValueError as e:
                raise InvalidPayloadError(f"Invalid webhook payload: {e}") from e

            event = self._decode(raw_body)
            self._logger.info(
                "webhook_verified",
                mode=mode.value,
                event_type=event.get("type", "unknown"),
                event_id=event.get("id"),
            )
            return VerifiedEvent(event=event, mode=mode)

        self._logger.warning("webhook_signature_invalid")
        raise AuthenticationError("Webhook signature verification failed with all secrets")

    @staticmethod
    def _decode(raw_body: bytes) -> dict[str, Any]:
        try:
            event = json.loads(raw_body)
        except ValueError as e:
            raise InvalidPayloadError(f"Invalid webhook payload: {e}") from e
        if not isinstance(event, dict):
            raise InvalidPayloadError("Webhook payload must be a JSON object")
        return event
