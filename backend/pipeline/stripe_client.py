# pipeline/stripe_client.py
# ============================================================================
# APPRAISAL FULFILLMENT - STRIPE API CLIENT
# ============================================================================
# Session lookup and checkout creation against the Test or Live account.
# The SDK is synchronous, so calls run in the default executor.
# ============================================================================

import asyncio
from typing import Any

import stripe
import structlog

from config import Settings
from errors import ConfigurationError
from schemas.fulfillment import PaymentMode


class StripeClient:
    """Per-mode Stripe API access."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._logger = structlog.get_logger().bind(component="stripe_client")

    def api_key(self, mode: PaymentMode) -> str:
        key = (
            self.settings.stripe_secret_key_test
            if mode == PaymentMode.TEST
            else self.settings.stripe_secret_key_live
        )
        if not key:
            raise ConfigurationError(f"Missing Stripe secret key for {mode.value} mode")
        return key

    async def _run(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    async def retrieve_session(
        self,
        session_id: str,
        mode: PaymentMode = PaymentMode.LIVE,
    ) -> dict[str, Any]:
        api_key = self.api_key(mode)

        def retrieve():
            return stripe.checkout.Session.retrieve(
                session_id,
                api_key=api_key,
                expand=["line_items", "customer_details"],
            )

        try:
            session = await self._run(retrieve)
        except stripe.StripeError as e:
            self._logger.error(
                "session_retrieve_failed",
                session_id=session_id,
                mode=mode.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        self._logger.info("session_retrieved", session_id=session_id, mode=mode.value)
        return session.to_dict()

    async def create_checkout_session(
        self,
        params: dict[str, Any],
        mode: PaymentMode = PaymentMode.LIVE,
    ) -> dict[str, Any]:
        api_key = self.api_key(mode)

        try:
            session = await self._run(
                lambda: stripe.checkout.Session.create(api_key=api_key, **params)
            )
        except stripe.StripeError as e:
            self._logger.error("checkout_failed", error=str(e), error_type=type(e).__name__)
            raise

        self._logger.info(
            "checkout_created",
            stripe_session_id=session.id,
            client_reference_id=params.get("client_reference_id"),
        )
        return session.to_dict()
