"""
Achievement catalog.

Bump CATALOG_VERSION whenever an entry's threshold or reward changes; unlock
rows record the version they were granted under.
"""
from typing import Dict, List, Tuple

from recipe_credits.models.achievement import Achievement, AchievementMetric

CATALOG_VERSION = 1

# (threshold, reward, title) per metric, in unlock order
_RECIPE_TIERS: List[Tuple[int, int, str]] = [
    (1, 1, "First Bite"),
    (5, 1, "Curious Cook"),
    (15, 1, "Recipe Enthusiast"),
    (30, 2, "Kitchen Adventurer"),
    (50, 2, "Recipe Collector"),
    (75, 2, "Culinary Explorer"),
    (100, 3, "Recipe Master"),
    (150, 3, "Kitchen Wizard"),
    (250, 3, "Recipe Genius"),
    (500, 3, "Loma Legend"),
]

_STREAK_TIERS: List[Tuple[int, int, str]] = [
    (1, 1, "Day Starter"),
    (2, 1, "Double Day"),
    (3, 1, "Three Day Rush"),
    (5, 2, "Five Day Focus"),
    (7, 2, "Week Streak"),
    (10, 2, "Ten Day Titan"),
    (14, 3, "Two Week Wonder"),
    (20, 3, "Twenty Day Champion"),
    (30, 3, "Monthly Streak"),
    (60, 3, "Unstoppable"),
]

_COOKED_TIERS: List[Tuple[int, int, str]] = [
    (1, 1, "First Meal Made"),
    (3, 1, "Getting Started"),
    (10, 1, "Home Chef"),
    (20, 2, "Kitchen Regular"),
    (35, 2, "Meal Master"),
    (50, 2, "Cooking Champion"),
    (75, 3, "Culinary Expert"),
    (100, 3, "Kitchen Veteran"),
    (150, 3, "Master Chef"),
    (250, 3, "Loma Chef Legend"),
]


def _build(prefix: str, metric: AchievementMetric, tiers: List[Tuple[int, int, str]]) -> List[Achievement]:
    return [
        Achievement(id=f"{prefix}_{threshold}", metric=metric, threshold=threshold, reward=reward, title=title)
        for threshold, reward, title in tiers
    ]


ACHIEVEMENTS: Tuple[Achievement, ...] = tuple(
    _build("recipe", "recipesGenerated", _RECIPE_TIERS)
    + _build("streak", "streak", _STREAK_TIERS)
    + _build("cooked", "recipesCooked", _COOKED_TIERS)
)

ACHIEVEMENTS_BY_ID: Dict[str, Achievement] = {item.id: item for item in ACHIEVEMENTS}


def qualifying(metrics: Dict[str, int]) -> List[Achievement]:
    """Every catalog entry whose metric value meets its threshold."""
    return [item for item in ACHIEVEMENTS if metrics.get(item.metric, 0) >= item.threshold]
