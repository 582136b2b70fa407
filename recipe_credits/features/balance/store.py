"""
Balance store: one subscription row per user holding the credit balance,
lifetime counters and subscription status.

Writes to balance and counters go through the debit and credit engines;
this module owns account creation, reads and status overwrites.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from recipe_credits.core.config import settings
from recipe_credits.core.database import credit_ledger, get_db_session, subscriptions, users
from recipe_credits.core.errors import NotFoundError
from recipe_credits.core.logging import log_event
from recipe_credits.models.subscription import SubscriptionRecord

TRIAL_GRANT_REASON = "trial-grant"

_UNSET = object()


def _row_to_record(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=row.user_id,
        balance=row.balance,
        used_lifetime=row.used_lifetime,
        granted_lifetime=row.granted_lifetime,
        status=row.status,
        plan_id=row.plan_id,
        current_period_end=row.current_period_end,
        cancelled_at=row.cancelled_at,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
    )


def _fetch_record(user_id: str) -> Optional[SubscriptionRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.user_id == user_id)
        ).first()
    return _row_to_record(row) if row else None


def open_account(user_id: str, now: Optional[datetime] = None) -> SubscriptionRecord:
    """
    Create the user's record in trialing status with the trial grant.

    Idempotent: an existing record is returned untouched. Two concurrent
    openers race on the primary key and the loser reads the winner's row.
    """
    existing = _fetch_record(user_id)
    if existing:
        return existing

    ts = now or datetime.now(timezone.utc)
    grant = max(int(settings.TRIAL_GRANT_CREDITS), 0)

    try:
        with get_db_session() as session:
            has_user = session.execute(
                select(users.c.user_id).where(users.c.user_id == user_id)
            ).first()
            if has_user is None:
                session.execute(insert(users).values(user_id=user_id, created_at=ts))

            session.execute(
                insert(subscriptions).values(
                    user_id=user_id,
                    balance=grant,
                    used_lifetime=0,
                    granted_lifetime=grant,
                    status="trialing",
                    created_at=ts,
                    updated_at=ts,
                )
            )
            if grant:
                session.execute(
                    insert(credit_ledger).values(
                        user_id=user_id,
                        reason=TRIAL_GRANT_REASON,
                        mode="top_up",
                        delta=grant,
                        balance_after=grant,
                        created_at=ts,
                    )
                )
        log_event("info", "account.opened", user_id=user_id, event_type="account.opened", extra={"amount": grant})
    except IntegrityError:
        log_event("info", "account.open_raced", user_id=user_id, event_type="account.opened")

    record = _fetch_record(user_id)
    if record is None:
        raise NotFoundError(f"Account for user {user_id} could not be opened")
    return record


def get_record(user_id: str) -> SubscriptionRecord:
    record = _fetch_record(user_id)
    if record is None:
        raise NotFoundError(f"No subscription record for user {user_id}")
    return record


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite hands back naive values; everything is stored in UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def get_balance_summary(user_id: str) -> Dict[str, Any]:
    """Read shape used by the app: balance, used, total granted and status fields."""
    record = get_record(user_id)
    return {
        "balance": record.balance,
        "used": record.used_lifetime,
        "total": record.granted_lifetime,
        "status": record.status,
        "planId": record.plan_id,
        "currentPeriodEnd": _iso(record.current_period_end),
        "cancelledAt": _iso(record.cancelled_at),
    }


def check_spendable(user_id: str) -> Dict[str, Any]:
    """Pre-flight check before starting a paid generation. Never mutates."""
    record = _fetch_record(user_id)
    if record is None:
        return {
            "hasCredits": False,
            "balance": 0,
            "status": None,
            "message": "No subscription found",
        }

    has_balance = record.balance > 0
    if not record.can_spend:
        message = "Subscription is not active"
    elif not has_balance:
        message = "No credits available"
    else:
        message = "Credits available"

    return {
        "hasCredits": has_balance and record.can_spend,
        "balance": record.balance,
        "status": record.status,
        "message": message,
    }


def apply_subscription_state(
    user_id: str,
    *,
    status: Optional[str] = None,
    plan_id: Any = _UNSET,
    current_period_end: Any = _UNSET,
    cancelled_at: Any = _UNSET,
    stripe_customer_id: Any = _UNSET,
    stripe_subscription_id: Any = _UNSET,
    now: Optional[datetime] = None,
) -> SubscriptionRecord:
    """
    Overwrite subscription status fields. Balance and counters are never touched.

    Only the fields passed are written, so replaying the same event converges
    on the same row.
    """
    values: Dict[str, Any] = {"updated_at": now or datetime.now(timezone.utc)}
    if status is not None:
        values["status"] = status
    if plan_id is not _UNSET:
        values["plan_id"] = plan_id
    if current_period_end is not _UNSET:
        values["current_period_end"] = current_period_end
    if cancelled_at is not _UNSET:
        values["cancelled_at"] = cancelled_at
    if stripe_customer_id is not _UNSET:
        values["stripe_customer_id"] = stripe_customer_id
    if stripe_subscription_id is not _UNSET:
        values["stripe_subscription_id"] = stripe_subscription_id

    with get_db_session() as session:
        result = session.execute(
            update(subscriptions).where(subscriptions.c.user_id == user_id).values(**values)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"No subscription record for user {user_id}")

    log_event(
        "info",
        "subscription.state_applied",
        user_id=user_id,
        event_type="subscription.state_applied",
        extra={"status": values.get("status")},
    )
    return get_record(user_id)


def find_user_by_customer(stripe_customer_id: Optional[str]) -> Optional[str]:
    if not stripe_customer_id:
        return None
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions.c.user_id).where(subscriptions.c.stripe_customer_id == stripe_customer_id)
        ).first()
    return row.user_id if row else None
