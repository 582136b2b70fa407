"""
Billing API routes.

- POST /api/billing/webhook: Handle Stripe webhooks
"""
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from recipe_credits.core.errors import BillingDisabledError
from recipe_credits.features.billing.service import billing_enabled, process_webhook_event

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates subscription state.

    Signature verification uses STRIPE_WEBHOOK_SECRET.
    Event deduplication uses stripe_event_id (stored in billing_events table).

    Returns:
        {"received": true, "event_id": "..."}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
        500: Processing failed (error stored on the event, Stripe redelivers)
    """
    if not billing_enabled():
        raise BillingDisabledError("Billing disabled")

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    result = await run_in_threadpool(process_webhook_event, headers, body)
    return {"received": True, "event_id": result.event_id, "duplicate": result.duplicate}
