"""
Subscription reconciler.

Coordinates:
- Webhook verification (via the provider)
- Event idempotency (billing_events, one row per Stripe event id)
- Subscription status transitions and plan grants

Stripe delivers at least once and out of order. Processed event ids
short-circuit; a failed event keeps its error and is reprocessed on the next
delivery. Grants are credits keyed on the event id, so a replay never adds
credits twice.
"""
import hashlib
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from recipe_credits.core.config import settings
from recipe_credits.core.database import get_db_session, billing_events
from recipe_credits.core.errors import BillingDisabledError
from recipe_credits.core.logging import log_event
from recipe_credits.features.balance import store
from recipe_credits.features.balance.credit import credit
from recipe_credits.features.billing.plans import (
    DEFAULT_PLAN,
    first_item,
    grant_for_plan,
    map_stripe_status,
    plan_for_price,
)
from recipe_credits.features.billing.provider import BillingProvider, BillingProviderError, BillingWebhookResult
from recipe_credits.features.billing.stripe_provider import StripeProvider, user_id_from_metadata


def billing_enabled() -> bool:
    """Webhooks are accepted only with a signing secret configured."""
    return bool(settings.STRIPE_WEBHOOK_SECRET)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def grant_reason(event_id: str) -> str:
    return f"billing-event:{event_id}"


def _from_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _resolve_user(obj: Dict[str, Any], provider: BillingProvider) -> Optional[str]:
    """Object metadata, then the locally linked customer, then the Stripe customer."""
    user_id = user_id_from_metadata(obj.get("metadata"))
    if user_id:
        store.open_account(user_id)
        return user_id

    customer_id = obj.get("customer")
    if not customer_id:
        return None
    user_id = store.find_user_by_customer(customer_id)
    if user_id:
        return user_id

    user_id = provider.lookup_customer_user(customer_id)
    if user_id:
        store.open_account(user_id)
    return user_id


def _subscription_period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    # Newer API versions moved the period onto subscription items
    return _from_timestamp(
        subscription.get("current_period_end")
        or first_item(subscription.get("items")).get("current_period_end")
    )


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = invoice.get("subscription")
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.get("id")
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _handle_subscription_change(event: Dict[str, Any], subscription: Dict[str, Any], user_id: str) -> BillingWebhookResult:
    plan_id = plan_for_price(first_item(subscription.get("items")).get("price")) or DEFAULT_PLAN
    stripe_status = subscription.get("status")
    status = map_stripe_status(stripe_status)

    if status is None:
        # Link the ids so later events resolve; status and balance stay as they are
        store.apply_subscription_state(
            user_id,
            stripe_customer_id=subscription.get("customer"),
            stripe_subscription_id=subscription.get("id"),
        )
        log_event(
            "warning",
            "billing.unknown_status",
            user_id=user_id,
            event_type=event["type"],
            extra={"stripe_event_id": event["id"], "stripe_status": stripe_status},
        )
        return BillingWebhookResult(
            event_id=event["id"],
            event_type=event["type"],
            action="unknown_status",
            user_id=user_id,
        )

    store.apply_subscription_state(
        user_id,
        status=status,
        plan_id=plan_id,
        current_period_end=_subscription_period_end(subscription),
        stripe_customer_id=subscription.get("customer"),
        stripe_subscription_id=subscription.get("id"),
    )

    if status == "trialing":
        # Nothing is paid yet; the trial keeps its credits until the first paid invoice
        return BillingWebhookResult(
            event_id=event["id"],
            event_type=event["type"],
            action="trial_synced",
            user_id=user_id,
            status=status,
            plan_id=plan_id,
        )

    grant = grant_for_plan(plan_id)
    result = credit(user_id, grant, grant_reason(event["id"]), mode="replace")
    return BillingWebhookResult(
        event_id=event["id"],
        event_type=event["type"],
        action="subscription_synced",
        user_id=user_id,
        status=status,
        plan_id=plan_id,
        credited=grant if result.applied else None,
    )


def _handle_subscription_deleted(event: Dict[str, Any], subscription: Dict[str, Any], user_id: str) -> BillingWebhookResult:
    # Remaining balance stays on the record; debits stop on status alone
    cancelled_at = _from_timestamp(subscription.get("canceled_at")) or datetime.now(timezone.utc)
    store.apply_subscription_state(user_id, status="cancelled", cancelled_at=cancelled_at)
    return BillingWebhookResult(
        event_id=event["id"],
        event_type=event["type"],
        action="subscription_cancelled",
        user_id=user_id,
        status="cancelled",
    )


def _handle_invoice_paid(event: Dict[str, Any], invoice: Dict[str, Any], user_id: str) -> BillingWebhookResult:
    billing_reason = invoice.get("billing_reason")
    if billing_reason not in ("subscription_cycle", "subscription_create"):
        return BillingWebhookResult(event_id=event["id"], event_type=event["type"], action="ignored", user_id=user_id)

    line = first_item(invoice.get("lines"))
    record = store.get_record(user_id)
    plan_id = plan_for_price(line.get("price")) or record.plan_id or DEFAULT_PLAN
    grant = grant_for_plan(plan_id)
    period_end = _from_timestamp((line.get("period") or {}).get("end")) or record.current_period_end

    store.apply_subscription_state(
        user_id,
        status="active",
        plan_id=plan_id,
        current_period_end=period_end,
        stripe_customer_id=invoice.get("customer") or record.stripe_customer_id,
        stripe_subscription_id=_invoice_subscription_id(invoice) or record.stripe_subscription_id,
    )

    # Renewals add to carry-over; the first paid period replaces trial credits
    mode = "top_up" if billing_reason == "subscription_cycle" else "replace"
    result = credit(user_id, grant, grant_reason(event["id"]), mode=mode)
    return BillingWebhookResult(
        event_id=event["id"],
        event_type=event["type"],
        action="renewal_credited" if mode == "top_up" else "first_period_credited",
        user_id=user_id,
        status="active",
        plan_id=plan_id,
        credited=grant if result.applied else None,
    )


def _handle_invoice_failed(event: Dict[str, Any], invoice: Dict[str, Any], user_id: str) -> BillingWebhookResult:
    store.apply_subscription_state(user_id, status="past_due")
    return BillingWebhookResult(
        event_id=event["id"],
        event_type=event["type"],
        action="marked_past_due",
        user_id=user_id,
        status="past_due",
    )


EVENT_HANDLERS = {
    "customer.subscription.created": _handle_subscription_change,
    "customer.subscription.updated": _handle_subscription_change,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_invoice_paid,
    "invoice.payment_failed": _handle_invoice_failed,
}


def apply_event(event: Dict[str, Any], provider: BillingProvider) -> BillingWebhookResult:
    """Apply one verified event to the subscription record."""
    handler = EVENT_HANDLERS.get(event["type"])
    if handler is None:
        return BillingWebhookResult(event_id=event["id"], event_type=event["type"], action="ignored")

    obj = (event.get("data") or {}).get("object") or {}
    user_id = _resolve_user(obj, provider)
    if not user_id:
        log_event(
            "warning",
            "billing.user_unresolved",
            event_type=event["type"],
            extra={"stripe_event_id": event["id"], "customer_id": obj.get("customer")},
        )
        return BillingWebhookResult(event_id=event["id"], event_type=event["type"], action="user_unresolved")

    return handler(event, obj, user_id)


def _record_event(event: Dict[str, Any], payload_hash: str) -> bool:
    """Insert the event row. Returns False when the event was already processed."""
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.id, billing_events.c.processed).where(
                billing_events.c.stripe_event_id == event["id"]
            )
        ).first()
        if existing:
            return not existing.processed

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=event["id"],
                    event_type=event["type"],
                    payload_hash=payload_hash,
                    processed=False,
                    received_at=datetime.now(timezone.utc),
                )
            )
    except IntegrityError:
        # Concurrent delivery inserted it first; handlers are idempotent
        pass
    return True


def process_webhook_event(headers: Dict[str, str], body: bytes, provider: Optional[BillingProvider] = None) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip if already processed)
    3. Apply state changes
    4. Mark as processed, or store the error and re-raise

    Raises:
        BillingDisabledError: No webhook secret configured
        InvalidSignatureError: Signature or payload invalid
    """
    provider = provider or get_provider()
    if not provider:
        raise BillingDisabledError("Billing not enabled")

    event = provider.verify_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    if not _record_event(event, payload_hash):
        log_event("info", "billing.webhook_duplicate", event_type=event["type"], extra={"stripe_event_id": event["id"]})
        return BillingWebhookResult(event_id=event["id"], event_type=event["type"], action="duplicate", duplicate=True)

    try:
        result = apply_event(event, provider)

        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event["id"])
                .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event["id"])
                .values(error=str(e)[:2000])
            )
        log_event(
            "error",
            "billing.webhook_failed",
            event_type=event["type"],
            error_code=getattr(e, "code", "internal_error"),
            extra={"stripe_event_id": event["id"]},
        )
        raise

    log_event(
        "info",
        "billing.webhook_processed",
        user_id=result.user_id,
        event_type=event["type"],
        extra={"stripe_event_id": event["id"], "action": result.action, "status": result.status, "plan_id": result.plan_id},
    )
    return result
