from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from recipe_credits.core.config import settings
from recipe_credits.core.database import get_db_session, streaks
from recipe_credits.core.logging import log_event
from recipe_credits.core.retry import sleep_before_retry
from recipe_credits.models.streak import StreakState

ONE_DAY = timedelta(days=1)


def _utc_day(occurred_at: Optional[datetime]) -> date:
    if occurred_at is None:
        return datetime.now(timezone.utc).date()
    if occurred_at.tzinfo is None:
        return occurred_at.date()
    return occurred_at.astimezone(timezone.utc).date()


def _row_to_state(user_id: str, row) -> StreakState:
    if row is None:
        return StreakState(user_id=user_id)
    return StreakState(
        user_id=user_id,
        current_streak=row.current_streak,
        best_streak=row.best_streak,
        last_activity_date=row.last_activity_date,
    )


def _matches_read(row):
    """CAS predicate on the (current_streak, last_activity_date) pair that was read."""
    last_clause = (
        streaks.c.last_activity_date.is_(None)
        if row.last_activity_date is None
        else streaks.c.last_activity_date == row.last_activity_date
    )
    return (streaks.c.current_streak == row.current_streak) & last_clause


class StreakTracker:
    """Consecutive-day activity counter on the store. Day-level, UTC only.

    Writes are conditional on the pair read, with a bounded retry. Streak
    updates are best effort: an exhausted budget is logged, not raised.
    """

    def get_state(self, user_id: str) -> StreakState:
        with get_db_session() as session:
            row = session.execute(
                select(
                    streaks.c.current_streak,
                    streaks.c.best_streak,
                    streaks.c.last_activity_date,
                ).where(streaks.c.user_id == user_id)
            ).first()
        return _row_to_state(user_id, row)

    def record_activity(self, user_id: str, occurred_at: Optional[datetime] = None) -> StreakState:
        """
        Count a qualifying activity on the UTC day of ``occurred_at``.

        Same day: no change. Day after the last activity: +1. Any later gap:
        restart at 1. Activity dated before the last recorded day is ignored.
        """
        day = _utc_day(occurred_at)
        max_attempts = max(int(settings.STREAK_MAX_ATTEMPTS), 1)

        for attempt in range(1, max_attempts + 1):
            try:
                state = self._attempt_record(user_id, day)
            except IntegrityError:
                # Another request created the row first
                state = None
            if state is not None:
                return state
            if attempt < max_attempts:
                sleep_before_retry(attempt)

        log_event(
            "warning",
            "streak.conflict_exhausted",
            user_id=user_id,
            event_type="streak.record_activity",
            error_code="conflict",
            extra={"day": day.isoformat()},
        )
        return self.get_state(user_id)

    def _attempt_record(self, user_id: str, day: date) -> Optional[StreakState]:
        now = datetime.now(timezone.utc)
        with get_db_session() as session:
            row = session.execute(
                select(
                    streaks.c.current_streak,
                    streaks.c.best_streak,
                    streaks.c.last_activity_date,
                ).where(streaks.c.user_id == user_id)
            ).first()

            if row is None:
                session.execute(
                    insert(streaks).values(
                        user_id=user_id,
                        current_streak=1,
                        best_streak=1,
                        last_activity_date=day,
                        updated_at=now,
                    )
                )
                log_event("info", "streak.started", user_id=user_id, event_type="streak.record_activity")
                return StreakState(user_id=user_id, current_streak=1, best_streak=1, last_activity_date=day)

            last = row.last_activity_date
            if last is not None and day <= last:
                return _row_to_state(user_id, row)

            if last is not None and day - last == ONE_DAY:
                current = row.current_streak + 1
            else:
                current = 1
            best = max(row.best_streak, current)

            result = session.execute(
                update(streaks)
                .where(streaks.c.user_id == user_id)
                .where(_matches_read(row))
                .values(
                    current_streak=current,
                    best_streak=best,
                    last_activity_date=day,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                session.rollback()
                return None

        log_event(
            "info",
            "streak.advanced" if current > 1 else "streak.restarted",
            user_id=user_id,
            event_type="streak.record_activity",
            extra={"current_streak": current, "best_streak": best},
        )
        return StreakState(user_id=user_id, current_streak=current, best_streak=best, last_activity_date=day)

    def check_reset(self, user_id: str, today: Optional[date] = None) -> StreakState:
        """Zero the current streak when more than one day has passed since the last activity.

        best_streak is never touched.
        """
        today = today or datetime.now(timezone.utc).date()
        max_attempts = max(int(settings.STREAK_MAX_ATTEMPTS), 1)

        for attempt in range(1, max_attempts + 1):
            with get_db_session() as session:
                row = session.execute(
                    select(
                        streaks.c.current_streak,
                        streaks.c.best_streak,
                        streaks.c.last_activity_date,
                    ).where(streaks.c.user_id == user_id)
                ).first()

                if row is None or row.last_activity_date is None:
                    return _row_to_state(user_id, row)
                if row.current_streak == 0 or today - row.last_activity_date <= ONE_DAY:
                    return _row_to_state(user_id, row)

                result = session.execute(
                    update(streaks)
                    .where(streaks.c.user_id == user_id)
                    .where(_matches_read(row))
                    .values(current_streak=0, updated_at=datetime.now(timezone.utc))
                )
                if result.rowcount == 1:
                    log_event(
                        "info",
                        "streak.reset",
                        user_id=user_id,
                        event_type="streak.reset",
                        extra={"previous_streak": row.current_streak},
                    )
                    return StreakState(
                        user_id=user_id,
                        current_streak=0,
                        best_streak=row.best_streak,
                        last_activity_date=row.last_activity_date,
                    )
                session.rollback()
            if attempt < max_attempts:
                sleep_before_retry(attempt)

        log_event("warning", "streak.reset_conflict_exhausted", user_id=user_id, event_type="streak.reset", error_code="conflict")
        return self.get_state(user_id)


streak_tracker = StreakTracker()
