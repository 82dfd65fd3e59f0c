"""
Stripe checkout adapter.

Implements the payment processor capability with Stripe Checkout.
"""

import logging
from typing import Any, Mapping, Optional

import stripe

from ..core.errors import ExternalProviderError, ValidationError
from ..core.pricing import PricingTier
from ..core.reconciliation import CheckoutSession, SessionStatus

logger = logging.getLogger(__name__)

DEFAULT_FRONTEND_URL = "http://localhost:5173"


class StripePayments:
    """Stripe Checkout payment processor.

    The secret key is passed per request instead of through the global
    ``stripe.api_key`` so several configurations can coexist in one process.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        frontend_url: str = DEFAULT_FRONTEND_URL,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def _require_key(self) -> str:
        if not self.secret_key:
            raise ExternalProviderError("stripe", "Stripe not configured")
        return self.secret_key

    def create_checkout(self, tier: PricingTier, user_id: str) -> CheckoutSession:
        """Create a one-time payment checkout session for a tier."""
        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.create(
                api_key=api_key,
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": f"{tier.name} - {tier.description}",
                            "description": f"{tier.credits} AI image generation credits",
                        },
                        "unit_amount": tier.price_cents,
                    },
                    "quantity": 1,
                }],
                mode="payment",
                success_url=(
                    f"{self.frontend_url}/credits?success=true"
                    "&session_id={CHECKOUT_SESSION_ID}"
                ),
                cancel_url=f"{self.frontend_url}/credits?canceled=true",
                metadata={
                    "userId": user_id,
                    "tierId": tier.id,
                    "credits": str(tier.credits),
                },
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout error for %s (%s): %s", user_id, tier.id, e)
            raise ExternalProviderError("stripe", str(e))

        logger.info("Stripe checkout created for %s: %s", user_id, tier.id)
        return CheckoutSession(session_id=session["id"], url=session["url"])

    def retrieve_session(self, session_id: str) -> SessionStatus:
        """Fetch a checkout session's payment state and metadata."""
        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=api_key)
        except stripe.StripeError as e:
            logger.error("Error retrieving Stripe session %s: %s", session_id, e)
            raise ExternalProviderError("stripe", str(e))
        metadata = session.get("metadata") or {}
        return SessionStatus(
            paid=session.get("payment_status") == "paid",
            metadata={key: metadata[key] for key in metadata},
        )

    def construct_event(self, payload: bytes, signature: str) -> Mapping[str, Any]:
        """Verify a webhook signature and parse the event.

        Raises:
            ExternalProviderError: If no webhook secret is configured
            ValidationError: If the payload or signature is invalid
        """
        if not self.webhook_secret:
            raise ExternalProviderError("stripe", "Webhook not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature error: %s", e)
            raise ValidationError(f"Webhook signature verification failed: {e}")
        except ValueError as e:
            raise ValidationError(f"Invalid webhook payload: {e}")
        logger.info("Stripe webhook received: %s", event["type"])
        return event
