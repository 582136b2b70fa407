"""
Usage accounting service.

Handles:
- Usage event emission. Paid generations are appended by the debit engine
  inside the debit transaction; cooking completions come from the app.
- Usage counting for achievement metrics

Events are always stamped with server time.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError

from recipe_credits.core.database import get_db_session, usage_events
from recipe_credits.core.errors import ValidationError
from recipe_credits.core.logging import log_event
from recipe_credits.features.streaks.service import streak_tracker
from recipe_credits.models.usage import RECIPES_COOKED, RECIPES_GENERATED, USAGE_KEYS, UsageCounters

logger = logging.getLogger("recipe_credits")


def append_usage_event(
    session,
    user_id: str,
    usage_key: str,
    reference_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> None:
    """Insert one event in the caller's transaction. A repeated reference raises IntegrityError."""
    if usage_key not in USAGE_KEYS:
        raise ValidationError(f"Unknown usage key: {usage_key}", details={"usage_key": usage_key})
    session.execute(
        insert(usage_events).values(
            user_id=user_id,
            usage_key=usage_key,
            reference_id=reference_id,
            occurred_at=occurred_at or datetime.now(timezone.utc),
        )
    )


def reference_recorded(user_id: str, usage_key: str, reference_id: str) -> bool:
    with get_db_session() as session:
        row = session.execute(
            select(usage_events.c.id)
            .where(usage_events.c.user_id == user_id)
            .where(usage_events.c.usage_key == usage_key)
            .where(usage_events.c.reference_id == reference_id)
        ).first()
    return row is not None


def record_usage(user_id: str, usage_key: str, reference_id: Optional[str] = None) -> bool:
    """
    Append a usage event in its own transaction.

    Args:
        user_id: User performing the action
        usage_key: recipes.generated or recipes.cooked
        reference_id: Client id of the cooking session; a retried request
            carrying the same id is ignored

    Returns:
        True if a new event was recorded, False for a duplicate reference
    """
    try:
        with get_db_session() as session:
            append_usage_event(session, user_id, usage_key, reference_id=reference_id)
    except IntegrityError:
        log_event(
            "info",
            "usage.duplicate_reference",
            user_id=user_id,
            event_type=usage_key,
            extra={"reference_id": reference_id},
        )
        return False

    log_event("info", "usage.recorded", user_id=user_id, event_type=usage_key)
    return True


def record_cooking(user_id: str, reference_id: Optional[str] = None) -> bool:
    return record_usage(user_id, RECIPES_COOKED, reference_id=reference_id)


def advance_streak(user_id: str, occurred_at: Optional[datetime] = None) -> None:
    """Feed a paid generation to the streak tracker. Best effort: failures are logged."""
    try:
        streak_tracker.record_activity(user_id, occurred_at)
    except Exception:
        logger.warning(
            "streak.update_failed",
            exc_info=True,
            extra={"user_id": user_id, "event_type": "streak.record_activity"},
        )


def get_counters(user_id: str) -> UsageCounters:
    with get_db_session() as session:
        rows = session.execute(
            select(usage_events.c.usage_key, func.count(usage_events.c.id))
            .where(usage_events.c.user_id == user_id)
            .group_by(usage_events.c.usage_key)
        ).all()

    counts = {key: count for key, count in rows}
    return UsageCounters(
        recipes_generated=int(counts.get(RECIPES_GENERATED, 0)),
        recipes_cooked=int(counts.get(RECIPES_COOKED, 0)),
    )
