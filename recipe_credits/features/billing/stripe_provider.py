"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe SDK: webhook signature
verification and customer metadata lookups.
"""
import json
import logging
from typing import Dict, Any, Optional

import stripe

from recipe_credits.core.config import settings
from recipe_credits.core.errors import InvalidSignatureError
from recipe_credits.features.billing.provider import BillingProviderError

logger = logging.getLogger("recipe_credits")

# Customer metadata keys that carry our user id, newest first
USER_ID_METADATA_KEYS = ("user_id", "supabase_user_id")


def user_id_from_metadata(metadata: Any) -> Optional[str]:
    if not metadata:
        return None
    for key in USER_ID_METADATA_KEYS:
        try:
            value = metadata[key]
        except (KeyError, TypeError):
            continue
        if value:
            return str(value)
    return None


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY); only
                needed for customer lookups
            webhook_secret: Webhook signing secret (defaults to STRIPE_WEBHOOK_SECRET)
            tolerance_seconds: Max signature age (defaults to STRIPE_WEBHOOK_TOLERANCE_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )

        if not self.webhook_secret:
            raise BillingProviderError("STRIPE_WEBHOOK_SECRET not configured")

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """Verify Stripe webhook signature and parse the event body."""
        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise InvalidSignatureError("Missing stripe-signature header")

        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"),
                sig_header,
                self.webhook_secret,
                self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignatureError(f"Invalid signature: {e}")
        except UnicodeDecodeError:
            raise InvalidSignatureError("Webhook body is not valid UTF-8")

        try:
            event = json.loads(body)
        except ValueError as e:
            raise InvalidSignatureError(f"Invalid payload: {e}")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidSignatureError("Webhook payload is not a Stripe event")
        return event

    def lookup_customer_user(self, customer_id: str) -> Optional[str]:
        """Read the user id from the Stripe customer's metadata."""
        if not self.secret_key or not customer_id:
            return None
        try:
            customer = stripe.Customer.retrieve(customer_id, api_key=self.secret_key)
        except stripe.StripeError:
            logger.warning(
                "billing.customer_lookup_failed",
                exc_info=True,
                extra={"event_type": "billing.webhook", "customer_id": customer_id},
            )
            return None
        return user_id_from_metadata(getattr(customer, "metadata", None))
