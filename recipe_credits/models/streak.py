from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass
class StreakState:
    """
    Consecutive-day activity for a user. Day-level, UTC only.
    """

    user_id: str
    current_streak: int = 0
    best_streak: int = 0
    last_activity_date: Optional[date] = None

    @property
    def effective_streak(self) -> int:
        # Achievements stay earnable after a reset
        return max(self.current_streak, self.best_streak)

    def to_dict(self) -> dict:
        return {
            "currentStreak": self.current_streak,
            "bestStreak": self.best_streak,
            "lastActivityDate": self.last_activity_date.isoformat() if self.last_activity_date else None,
        }
