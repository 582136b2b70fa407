"""
Billing provider protocol.

Defines the interface the reconciler needs from a payment provider, so the
subscription state machine does not depend on Stripe's SDK directly.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass


class BillingProviderError(Exception):
    """Provider API call failed."""


@dataclass
class BillingWebhookResult:
    """Outcome of processing one webhook event."""
    event_id: str
    event_type: str
    action: str  # subscription_synced, renewal_credited, ..., ignored, duplicate
    user_id: Optional[str] = None
    status: Optional[str] = None
    plan_id: Optional[str] = None
    credited: Optional[int] = None
    duplicate: bool = False


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification and parsing
    - Mapping a provider customer back to an internal user id
    """

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify the webhook signature and return the parsed event.

        Raises:
            InvalidSignatureError: Missing or invalid signature, or malformed payload
        """
        ...

    def lookup_customer_user(self, customer_id: str) -> Optional[str]:
        """
        Resolve a provider customer to an internal user id via customer metadata.

        Returns None when the customer is unknown or carries no user id.
        """
        ...
