from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal

AchievementMetric = Literal["recipesGenerated", "streak", "recipesCooked"]


@dataclass(frozen=True)
class Achievement:
    """A catalog entry: reaching ``threshold`` on ``metric`` pays ``reward`` credits once."""

    id: str
    metric: AchievementMetric
    threshold: int
    reward: int
    title: str


@dataclass(frozen=True)
class UnlockedAchievement:
    id: str
    title: str
    reward: int

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "rewardAmount": self.reward}


@dataclass
class EvaluationResult:
    newly_unlocked: List[UnlockedAchievement] = field(default_factory=list)
    total_awarded: int = 0

    def to_dict(self) -> dict:
        return {
            "newlyUnlocked": [item.to_dict() for item in self.newly_unlocked],
            "totalAwarded": self.total_awarded,
        }
