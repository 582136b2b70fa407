"""
Debit engine.

A debit reads (balance, used, status), checks them, and applies the change
with a single conditional UPDATE keyed on the balance and used counter it
read. Zero rows updated means the row moved under us; the read-check-write
cycle runs again. Every write is conditional on the exact balance it was
computed from, so the balance never goes negative.

Retry budget: a lost write whose row has since changed means another writer
committed, so the system made progress and the attempt is not charged.
Only stalls (lost write, unchanged row) and store timeouts consume
DEBIT_MAX_ATTEMPTS; CAS_RETRY_CEILING caps the loop as a whole.

A debit for a generation also appends the ``recipes.generated`` usage event
in the same transaction, stamped with server time. Counters, streaks and
achievement rewards only ever see generations that were paid for.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from recipe_credits.core.config import settings
from recipe_credits.core.database import get_db_session, subscriptions
from recipe_credits.core.errors import (
    ConflictError,
    DuplicateReferenceError,
    InsufficientBalanceError,
    NotFoundError,
    SubscriptionNotActiveError,
    ValidationError,
)
from recipe_credits.core.logging import log_event
from recipe_credits.core.retry import sleep_before_retry
from recipe_credits.features.usage.service import advance_streak, append_usage_event, reference_recorded
from recipe_credits.models.subscription import SPENDABLE_STATUSES, DebitResult
from recipe_credits.models.usage import RECIPES_GENERATED

# Lost the CAS to a writer that committed in between
CONTENDED = "contended"


def _validate_amount(amount) -> int:
    # bool is an int subclass; True must not debit one credit
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Debit amount must be an integer", details={"amount": amount})
    if amount < 1 or amount > settings.MAX_DEBIT_AMOUNT:
        raise ValidationError(
            f"Debit amount must be between 1 and {settings.MAX_DEBIT_AMOUNT}",
            details={"amount": amount},
        )
    return amount


def _read_account(session, user_id: str):
    return session.execute(
        select(
            subscriptions.c.balance,
            subscriptions.c.used_lifetime,
            subscriptions.c.status,
        ).where(subscriptions.c.user_id == user_id)
    ).first()


def _counters(session, user_id: str):
    row = session.execute(
        select(subscriptions.c.balance, subscriptions.c.used_lifetime).where(subscriptions.c.user_id == user_id)
    ).first()
    return (row.balance, row.used_lifetime) if row else None


def _attempt_debit(
    user_id: str,
    amount: int,
    record_generation: bool = False,
    reference_id: Optional[str] = None,
) -> Union[DebitResult, str, None]:
    """One read-check-write cycle.

    Returns the DebitResult, CONTENDED when another writer committed between
    the read and the write, or None when the write stalled.
    """
    with get_db_session() as session:
        row = _read_account(session, user_id)

        if row is None:
            raise NotFoundError(f"No subscription record for user {user_id}")
        if row.status not in SPENDABLE_STATUSES:
            raise SubscriptionNotActiveError(
                "Subscription is not active",
                details={"status": row.status},
            )
        if row.balance < amount:
            raise InsufficientBalanceError(
                "Insufficient credits",
                details={"balance": row.balance, "requested": amount},
            )

        now = datetime.now(timezone.utc)
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.balance == row.balance)
            .where(subscriptions.c.used_lifetime == row.used_lifetime)
            .values(
                balance=row.balance - amount,
                used_lifetime=row.used_lifetime + amount,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            session.rollback()
            if _counters(session, user_id) != (row.balance, row.used_lifetime):
                return CONTENDED
            return None

        if record_generation:
            append_usage_event(session, user_id, RECIPES_GENERATED, reference_id=reference_id, occurred_at=now)

        return DebitResult(new_balance=row.balance - amount, new_used=row.used_lifetime + amount)


def debit(
    user_id: str,
    amount: int,
    *,
    record_generation: bool = False,
    reference_id: Optional[str] = None,
) -> DebitResult:
    """
    Atomically subtract ``amount`` credits from the user's balance.

    With ``record_generation`` the paid generation is logged in the same
    transaction; ``reference_id`` makes a retried request detectable.

    Raises:
        ValidationError: amount outside [1, MAX_DEBIT_AMOUNT]
        NotFoundError: no record for the user
        SubscriptionNotActiveError: status is past_due or cancelled
        InsufficientBalanceError: balance < amount (nothing written)
        DuplicateReferenceError: generation ``reference_id`` already debited
        ConflictError: the write kept stalling
    """
    amount = _validate_amount(amount)
    max_attempts = max(int(settings.DEBIT_MAX_ATTEMPTS), 1)
    ceiling = max(int(settings.CAS_RETRY_CEILING), max_attempts)
    stalls = 0

    for loop in range(1, ceiling + 1):
        try:
            outcome = _attempt_debit(user_id, amount, record_generation, reference_id)
        except OperationalError:
            # Lock or statement timeout in the store
            stalls += 1
            if stalls >= max_attempts:
                log_event("error", "debit.store_timeout", user_id=user_id, event_type="credits.debit", error_code="internal_error")
                raise
            sleep_before_retry(stalls)
            continue
        except IntegrityError:
            if reference_id and reference_recorded(user_id, RECIPES_GENERATED, reference_id):
                raise DuplicateReferenceError(
                    "Generation already debited",
                    details={"reference_id": reference_id},
                )
            raise

        if isinstance(outcome, DebitResult):
            log_event(
                "info",
                "debit.applied",
                user_id=user_id,
                event_type="credits.debit",
                extra={"amount": amount, "balance": outcome.new_balance, "attempt": loop},
            )
            if record_generation:
                advance_streak(user_id)
            return outcome

        if outcome == CONTENDED:
            log_event("info", "debit.cas_contended", user_id=user_id, event_type="credits.debit", extra={"attempt": loop})
            sleep_before_retry(1)
            continue

        stalls += 1
        log_event("info", "debit.cas_stalled", user_id=user_id, event_type="credits.debit", extra={"attempt": loop})
        if stalls >= max_attempts:
            break
        sleep_before_retry(stalls)

    log_event("warning", "debit.conflict_exhausted", user_id=user_id, event_type="credits.debit", error_code="conflict")
    raise ConflictError(
        "Balance changed concurrently, retry the request",
        details={"attempts": loop, "stalls": stalls},
    )
