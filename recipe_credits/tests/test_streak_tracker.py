"""
Streak tracker: UTC day transitions, reset check, best streak preservation.
"""
from datetime import date, datetime, timedelta, timezone

from recipe_credits.features.streaks.service import streak_tracker

DAY1 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _day(n: int) -> datetime:
    return DAY1 + timedelta(days=n - 1)


def test_no_activity_reads_zero_state():
    state = streak_tracker.get_state("user_none")

    assert state.current_streak == 0
    assert state.best_streak == 0
    assert state.last_activity_date is None


def test_consecutive_days_increment():
    for n in (1, 2, 3):
        state = streak_tracker.record_activity("user_run", _day(n))

    assert state.current_streak == 3
    assert state.best_streak == 3
    assert streak_tracker.get_state("user_run").last_activity_date == date(2024, 3, 3)


def test_same_day_activity_does_not_increment():
    streak_tracker.record_activity("user_same_day", _day(1))
    state = streak_tracker.record_activity("user_same_day", _day(1) + timedelta(hours=5))

    assert state.current_streak == 1


def test_gap_restarts_streak_and_keeps_best():
    for n in (1, 2, 3):
        streak_tracker.record_activity("user_gap", _day(n))

    state = streak_tracker.record_activity("user_gap", _day(5))

    assert state.current_streak == 1
    assert state.best_streak == 3


def test_skipping_one_day_restarts():
    streak_tracker.record_activity("user_skip", _day(1))
    state = streak_tracker.record_activity("user_skip", _day(3))

    assert state.current_streak == 1
    assert state.best_streak == 1


def test_activity_before_last_day_is_ignored():
    streak_tracker.record_activity("user_late", _day(1))
    streak_tracker.record_activity("user_late", _day(2))

    state = streak_tracker.record_activity("user_late", _day(1))

    assert state.current_streak == 2
    assert state.last_activity_date == date(2024, 3, 2)


def test_day_is_taken_in_utc():
    # 23:30 in New York on Mar 1 is Mar 2 in UTC
    local = datetime(2024, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    streak_tracker.record_activity("user_tz", _day(1))

    state = streak_tracker.record_activity("user_tz", local)

    assert state.current_streak == 2
    assert state.last_activity_date == date(2024, 3, 2)


def test_reset_check_zeroes_lapsed_streak_only():
    for n in (1, 2, 3, 4):
        streak_tracker.record_activity("user_lapsed", _day(n))

    state = streak_tracker.check_reset("user_lapsed", today=date(2024, 3, 7))

    assert state.current_streak == 0
    assert state.best_streak == 4
    assert streak_tracker.get_state("user_lapsed").current_streak == 0


def test_reset_check_keeps_streak_alive_the_next_day():
    streak_tracker.record_activity("user_alive", _day(1))
    streak_tracker.record_activity("user_alive", _day(2))

    state = streak_tracker.check_reset("user_alive", today=date(2024, 3, 3))

    assert state.current_streak == 2


def test_reset_check_without_row():
    state = streak_tracker.check_reset("user_nobody", today=date(2024, 3, 3))

    assert state.current_streak == 0
    assert state.best_streak == 0


def test_best_streak_never_below_current():
    days = [1, 2, 4, 5, 6, 7, 9]
    for n in days:
        state = streak_tracker.record_activity("user_mixed", _day(n))
        assert state.best_streak >= state.current_streak

    assert state.current_streak == 1
    assert state.best_streak == 4


def test_effective_streak_survives_reset():
    for n in (1, 2, 3):
        streak_tracker.record_activity("user_effective", _day(n))
    streak_tracker.check_reset("user_effective", today=date(2024, 3, 10))

    state = streak_tracker.get_state("user_effective")

    assert state.current_streak == 0
    assert state.effective_streak == 3
