"""
Subscription reconciler: signature verification, event idempotency, transitions.

Payloads are signed with the real Stripe v1 scheme so verification runs unmocked.
"""
import time
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import select

from recipe_credits.core.config import settings
from recipe_credits.core.database import billing_events, get_db_session
from recipe_credits.core.errors import BillingDisabledError, InvalidSignatureError, SubscriptionNotActiveError
from recipe_credits.features.balance.debit import debit
from recipe_credits.features.balance.store import get_record
from recipe_credits.features.billing.service import process_webhook_event

PERIOD_END = 1735689600  # 2025-01-01T00:00:00Z


def _subscription(user_id="user_sub", status="active", interval="month", price_id="price_monthly", customer="cus_sub"):
    return {
        "id": "sub_123",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": PERIOD_END,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"data": [{"price": {"id": price_id, "recurring": {"interval": interval}}}]},
    }


def _invoice(billing_reason, customer="cus_inv", interval="month"):
    return {
        "id": "in_123",
        "object": "invoice",
        "customer": customer,
        "subscription": "sub_inv",
        "billing_reason": billing_reason,
        "lines": {
            "data": [
                {
                    "price": {"id": "price_unmapped", "recurring": {"interval": interval}},
                    "period": {"end": PERIOD_END},
                }
            ]
        },
    }


def _event_row(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events.c.processed, billing_events.c.error).where(
                billing_events.c.stripe_event_id == event_id
            )
        ).first()


def test_subscription_updated_monthly_replaces_balance_with_20(make_account, stripe_event):
    make_account("user_sub")
    headers, body = stripe_event("evt_sub_1", "customer.subscription.updated", _subscription())

    result = process_webhook_event(headers, body)

    record = get_record("user_sub")
    assert result.action == "subscription_synced"
    assert record.balance == 20
    assert record.status == "active"
    assert record.plan_id == "monthly"
    assert record.stripe_customer_id == "cus_sub"
    assert record.stripe_subscription_id == "sub_123"
    assert record.current_period_end is not None
    assert record.granted_lifetime - record.used_lifetime == record.balance
    assert _event_row("evt_sub_1").processed


@pytest.mark.parametrize("interval,expected", [("week", 5), ("month", 20), ("year", 240)])
def test_plan_from_price_interval(make_account, stripe_event, interval, expected):
    make_account("user_sub")
    headers, body = stripe_event(f"evt_{interval}", "customer.subscription.created", _subscription(interval=interval))

    process_webhook_event(headers, body)

    assert get_record("user_sub").balance == expected


def test_configured_price_id_wins_over_interval(make_account, stripe_event, monkeypatch):
    make_account("user_sub")
    monkeypatch.setattr(settings, "STRIPE_PRICE_YEARLY", "price_annual")
    headers, body = stripe_event(
        "evt_price", "customer.subscription.updated", _subscription(price_id="price_annual", interval="month")
    )

    process_webhook_event(headers, body)

    record = get_record("user_sub")
    assert record.plan_id == "yearly"
    assert record.balance == 240


def test_stripe_statuses_are_mapped(make_account, stripe_event):
    make_account("user_sub")
    headers, body = stripe_event("evt_unpaid", "customer.subscription.updated", _subscription(status="unpaid"))

    process_webhook_event(headers, body)

    assert get_record("user_sub").status == "past_due"


def test_trialing_subscription_keeps_trial_credits(make_account, stripe_event):
    make_account("user_sub")
    headers, body = stripe_event(
        "evt_trial_year", "customer.subscription.created", _subscription(status="trialing", interval="year")
    )

    result = process_webhook_event(headers, body)

    record = get_record("user_sub")
    assert result.action == "trial_synced"
    assert result.credited is None
    assert record.balance == 3
    assert record.granted_lifetime == 3
    assert record.status == "trialing"
    assert record.plan_id == "yearly"
    assert record.stripe_subscription_id == "sub_123"


def test_unknown_stripe_status_grants_nothing(make_account, stripe_event):
    make_account("user_sub", balance=2, status="active")
    headers, body = stripe_event("evt_paused", "customer.subscription.updated", _subscription(status="paused"))

    result = process_webhook_event(headers, body)

    record = get_record("user_sub")
    assert result.action == "unknown_status"
    assert record.balance == 2
    assert record.status == "active"
    assert record.plan_id is None
    assert record.stripe_customer_id == "cus_sub"
    assert _event_row("evt_paused").processed


def test_replayed_event_is_not_applied_twice(make_account, stripe_event):
    make_account("user_sub")
    headers, body = stripe_event("evt_replay", "customer.subscription.updated", _subscription())
    process_webhook_event(headers, body)
    debit("user_sub", 1)

    replay = process_webhook_event(headers, body)

    assert replay.duplicate is True
    assert get_record("user_sub").balance == 19


def test_cycle_renewal_tops_up_carry_over(make_account, stripe_event):
    make_account("user_renew", balance=3, status="active", plan_id="monthly", stripe_customer_id="cus_inv")
    headers, body = stripe_event("evt_cycle", "invoice.payment_succeeded", _invoice("subscription_cycle"))

    result = process_webhook_event(headers, body)

    record = get_record("user_renew")
    assert result.action == "renewal_credited"
    assert record.balance == 23
    assert record.status == "active"
    assert record.current_period_end is not None
    assert record.stripe_subscription_id == "sub_inv"


def test_first_paid_invoice_replaces_trial_credits(make_account, stripe_event):
    make_account("user_first", stripe_customer_id="cus_inv")
    headers, body = stripe_event("evt_create", "invoice.payment_succeeded", _invoice("subscription_create", interval="week"))

    process_webhook_event(headers, body)

    record = get_record("user_first")
    assert record.balance == 5
    assert record.status == "active"
    assert record.plan_id == "weekly"


def test_other_invoice_reasons_are_acknowledged(make_account, stripe_event):
    make_account("user_manual", balance=4, status="active", stripe_customer_id="cus_inv")
    headers, body = stripe_event("evt_manual", "invoice.payment_succeeded", _invoice("manual"))

    result = process_webhook_event(headers, body)

    assert result.action == "ignored"
    assert get_record("user_manual").balance == 4


def test_subscription_deleted_cancels_and_keeps_balance(make_account, stripe_event):
    make_account("user_sub", balance=7, status="active")
    headers, body = stripe_event("evt_deleted", "customer.subscription.deleted", _subscription(status="canceled"))

    process_webhook_event(headers, body)

    record = get_record("user_sub")
    assert record.status == "cancelled"
    assert record.cancelled_at is not None
    assert record.balance == 7
    with pytest.raises(SubscriptionNotActiveError):
        debit("user_sub", 1)


def test_payment_failed_marks_past_due(make_account, stripe_event):
    make_account("user_failed", balance=6, status="active", stripe_customer_id="cus_inv")
    headers, body = stripe_event("evt_failed", "invoice.payment_failed", _invoice("subscription_cycle"))

    process_webhook_event(headers, body)

    record = get_record("user_failed")
    assert record.status == "past_due"
    assert record.balance == 6


def test_unhandled_event_type_is_recorded_and_acknowledged(stripe_event):
    headers, body = stripe_event("evt_other", "charge.refunded", {"id": "ch_1"})

    result = process_webhook_event(headers, body)

    assert result.action == "ignored"
    assert _event_row("evt_other").processed


def test_user_resolved_through_stripe_customer(stripe_event, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_dummy")
    customer = Mock()
    customer.metadata = {"user_id": "user_lookup"}
    headers, body = stripe_event(
        "evt_lookup", "customer.subscription.updated", _subscription(user_id=None, customer="cus_lookup")
    )

    with patch("stripe.Customer.retrieve", return_value=customer) as retrieve:
        result = process_webhook_event(headers, body)

    retrieve.assert_called_once()
    assert result.user_id == "user_lookup"
    record = get_record("user_lookup")
    assert record.balance == 20
    assert record.stripe_customer_id == "cus_lookup"


def test_unresolved_user_is_acknowledged(stripe_event):
    headers, body = stripe_event(
        "evt_orphan", "customer.subscription.updated", _subscription(user_id=None, customer="cus_unknown")
    )

    result = process_webhook_event(headers, body)

    assert result.action == "user_unresolved"
    assert _event_row("evt_orphan").processed


def test_failed_event_is_stored_and_reprocessed(make_account, stripe_event):
    make_account("user_sub")
    headers, body = stripe_event("evt_retry", "customer.subscription.updated", _subscription())

    with patch("recipe_credits.features.billing.service.credit", side_effect=RuntimeError("store down")):
        with pytest.raises(RuntimeError):
            process_webhook_event(headers, body)

    row = _event_row("evt_retry")
    assert row.processed is False
    assert "store down" in row.error

    result = process_webhook_event(headers, body)

    assert result.duplicate is False
    assert get_record("user_sub").balance == 20
    row = _event_row("evt_retry")
    assert row.processed is True
    assert row.error is None


def test_tampered_body_is_rejected(make_account, stripe_event):
    make_account("user_sub")
    headers, body = stripe_event("evt_tamper", "customer.subscription.updated", _subscription())
    tampered = body.replace(b'"active"', b'"trialing"')

    with pytest.raises(InvalidSignatureError):
        process_webhook_event(headers, tampered)

    assert get_record("user_sub").balance == 3
    assert _event_row("evt_tamper") is None


def test_wrong_secret_is_rejected(stripe_event):
    headers, body = stripe_event("evt_wrong", "charge.refunded", {"id": "ch_1"}, secret="whsec_other")

    with pytest.raises(InvalidSignatureError):
        process_webhook_event(headers, body)


def test_stale_signature_is_rejected(stripe_event):
    headers, body = stripe_event("evt_stale", "charge.refunded", {"id": "ch_1"}, timestamp=time.time() - 3600)

    with pytest.raises(InvalidSignatureError):
        process_webhook_event(headers, body)


def test_missing_signature_header_is_rejected(stripe_event):
    _, body = stripe_event("evt_nosig", "charge.refunded", {"id": "ch_1"})

    with pytest.raises(InvalidSignatureError):
        process_webhook_event({}, body)


def test_billing_disabled_without_webhook_secret(stripe_event, monkeypatch):
    headers, body = stripe_event("evt_disabled", "charge.refunded", {"id": "ch_1"})
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)

    with pytest.raises(BillingDisabledError):
        process_webhook_event(headers, body)


def test_webhook_route_accepts_signed_event(client, make_account, stripe_event):
    make_account("user_sub")
    headers, body = stripe_event("evt_http", "customer.subscription.updated", _subscription())

    response = client.post(
        "/api/billing/webhook",
        content=body,
        headers={**headers, "content-type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["received"] is True
    assert response.json()["event_id"] == "evt_http"
    assert get_record("user_sub").balance == 20


def test_webhook_route_rejects_bad_signature(client, stripe_event):
    _, body = stripe_event("evt_http_bad", "charge.refunded", {"id": "ch_1"})

    response = client.post(
        "/api/billing/webhook",
        content=body,
        headers={"stripe-signature": "t=1,v1=deadbeef", "content-type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_signature"
    assert response.headers.get("x-request-id")


def test_webhook_route_reports_billing_disabled(client, stripe_event, monkeypatch):
    headers, body = stripe_event("evt_http_off", "charge.refunded", {"id": "ch_1"})
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)

    response = client.post("/api/billing/webhook", content=body, headers=headers)

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "billing_disabled"
