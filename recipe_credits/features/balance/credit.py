"""
Credit engine.

Every credit carries a reason string that doubles as its idempotency key
(``achievement:<id>``, ``billing-event:<stripe_event_id>``, ``trial-grant``).
The ledger row and the balance change commit in one transaction; the
unique (user_id, reason) index turns a replayed credit into a no-op.

Modes:
- top_up: balance += amount, granted_lifetime += amount
- replace: balance = amount; a positive difference is booked as granted,
  a negative one as used (forfeited credits), so lifetime counters stay
  monotonic and granted - used == balance keeps holding.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from recipe_credits.core.config import settings
from recipe_credits.core.database import credit_ledger, get_db_session, subscriptions
from recipe_credits.core.errors import ConflictError, NotFoundError, ValidationError
from recipe_credits.core.logging import log_event
from recipe_credits.core.retry import sleep_before_retry
from recipe_credits.models.subscription import CreditResult

CREDIT_MODES = ("top_up", "replace")

# Lost the CAS to a writer that committed in between
CONTENDED = "contended"


def _validate(amount, reason: str, mode: str) -> None:
    if mode not in CREDIT_MODES:
        raise ValidationError(f"Unknown credit mode: {mode}", details={"mode": mode})
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Credit amount must be an integer", details={"amount": amount})
    if mode == "top_up" and amount <= 0:
        raise ValidationError("Top-up amount must be positive", details={"amount": amount})
    if mode == "replace" and amount < 0:
        raise ValidationError("Replacement balance cannot be negative", details={"amount": amount})
    if not reason or not isinstance(reason, str) or len(reason) > 200:
        raise ValidationError("Credit reason must be a non-empty string of at most 200 characters")


def _current_balance(user_id: str) -> int:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions.c.balance).where(subscriptions.c.user_id == user_id)
        ).first()
    if row is None:
        raise NotFoundError(f"No subscription record for user {user_id}")
    return row.balance


def _reason_booked(user_id: str, reason: str) -> bool:
    with get_db_session() as session:
        row = session.execute(
            select(credit_ledger.c.id)
            .where(credit_ledger.c.user_id == user_id)
            .where(credit_ledger.c.reason == reason)
        ).first()
    return row is not None


def _read_counters(session, user_id: str):
    return session.execute(
        select(
            subscriptions.c.balance,
            subscriptions.c.used_lifetime,
            subscriptions.c.granted_lifetime,
        ).where(subscriptions.c.user_id == user_id)
    ).first()


def _attempt_credit(user_id: str, amount: int, reason: str, mode: str, ts: datetime) -> Union[CreditResult, str, None]:
    """One transaction.

    Returns the CreditResult, CONTENDED when another writer committed between
    the read and the write, or None when the write stalled.
    """
    try:
        with get_db_session() as session:
            row = _read_counters(session, user_id)
            if row is None:
                raise NotFoundError(f"No subscription record for user {user_id}")

            if mode == "top_up":
                new_balance = row.balance + amount
                new_granted = row.granted_lifetime + amount
                new_used = row.used_lifetime
            else:
                diff = amount - row.balance
                new_balance = amount
                new_granted = row.granted_lifetime + max(diff, 0)
                new_used = row.used_lifetime + max(-diff, 0)

            session.execute(
                insert(credit_ledger).values(
                    user_id=user_id,
                    reason=reason,
                    mode=mode,
                    delta=new_balance - row.balance,
                    balance_after=new_balance,
                    created_at=ts,
                )
            )

            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .where(subscriptions.c.balance == row.balance)
                .where(subscriptions.c.used_lifetime == row.used_lifetime)
                .where(subscriptions.c.granted_lifetime == row.granted_lifetime)
                .values(
                    balance=new_balance,
                    used_lifetime=new_used,
                    granted_lifetime=new_granted,
                    updated_at=ts,
                )
            )
            if result.rowcount != 1:
                # Drops the ledger row with the lost write
                session.rollback()
                if tuple(_read_counters(session, user_id)) != tuple(row):
                    return CONTENDED
                return None

            return CreditResult(new_balance=new_balance, applied=True)
    except IntegrityError:
        if not _reason_booked(user_id, reason):
            raise
        return CreditResult(new_balance=_current_balance(user_id), applied=False)


def credit(
    user_id: str,
    amount: int,
    reason: str,
    mode: str = "top_up",
    now: Optional[datetime] = None,
) -> CreditResult:
    """
    Apply a reason-keyed credit.

    Replaying a reason already booked for the user returns the current balance
    with applied=False and writes nothing. Writes lost to a committed writer
    are retried without charging CREDIT_MAX_ATTEMPTS, up to CAS_RETRY_CEILING.

    Raises:
        ValidationError: bad mode, amount or reason
        NotFoundError: no record for the user
        ConflictError: the write kept stalling
    """
    _validate(amount, reason, mode)
    ts = now or datetime.now(timezone.utc)
    max_attempts = max(int(settings.CREDIT_MAX_ATTEMPTS), 1)
    ceiling = max(int(settings.CAS_RETRY_CEILING), max_attempts)
    stalls = 0

    for loop in range(1, ceiling + 1):
        try:
            result = _attempt_credit(user_id, amount, reason, mode, ts)
        except OperationalError:
            stalls += 1
            if stalls >= max_attempts:
                log_event("error", "credit.store_timeout", user_id=user_id, event_type="credits.credit", error_code="internal_error")
                raise
            sleep_before_retry(stalls)
            continue

        if isinstance(result, CreditResult):
            log_event(
                "info",
                "credit.applied" if result.applied else "credit.duplicate",
                user_id=user_id,
                event_type="credits.credit",
                extra={"reason": reason, "mode": mode, "amount": amount, "balance": result.new_balance},
            )
            return result

        if result == CONTENDED:
            log_event("info", "credit.cas_contended", user_id=user_id, event_type="credits.credit", extra={"reason": reason, "attempt": loop})
            sleep_before_retry(1)
            continue

        stalls += 1
        log_event("info", "credit.cas_stalled", user_id=user_id, event_type="credits.credit", extra={"reason": reason, "attempt": loop})
        if stalls >= max_attempts:
            break
        sleep_before_retry(stalls)

    log_event("warning", "credit.conflict_exhausted", user_id=user_id, event_type="credits.credit", error_code="conflict", extra={"reason": reason})
    raise ConflictError(
        "Balance changed concurrently, retry the request",
        details={"attempts": loop, "stalls": stalls, "reason": reason},
    )
