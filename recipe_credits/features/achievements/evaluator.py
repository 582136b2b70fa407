"""
Achievement evaluator.

Evaluation is retroactive and idempotent:
- every qualifying entry not yet unlocked is unlocked, whatever the order
  the thresholds were crossed in
- unlock rows are written with one insert that skips existing pairs, so two
  concurrent evaluators never both unlock the same achievement
- each reward is a top-up credit with reason ``achievement:<id>``, so a
  reward is paid at most once even when settlement is retried
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, literal, select

from recipe_credits.core.database import credit_ledger, get_db_session, insert_ignore_returning, user_achievements
from recipe_credits.core.logging import log_event
from recipe_credits.features.achievements.catalog import ACHIEVEMENTS, CATALOG_VERSION, qualifying
from recipe_credits.features.balance.credit import credit
from recipe_credits.features.streaks.service import streak_tracker
from recipe_credits.features.usage.service import get_counters
from recipe_credits.models.achievement import EvaluationResult, UnlockedAchievement

logger = logging.getLogger("recipe_credits")

REWARD_REASON_PREFIX = "achievement:"


def reward_reason(achievement_id: str) -> str:
    return f"{REWARD_REASON_PREFIX}{achievement_id}"


def load_metrics(user_id: str) -> Dict[str, int]:
    counters = get_counters(user_id)
    streak = streak_tracker.get_state(user_id)
    return {
        "recipesGenerated": counters.recipes_generated,
        "recipesCooked": counters.recipes_cooked,
        # A broken streak keeps its earned tiers reachable
        "streak": streak.effective_streak,
    }


def _unlocked(user_id: str) -> Dict[str, datetime]:
    with get_db_session() as session:
        rows = session.execute(
            select(user_achievements.c.achievement_id, user_achievements.c.unlocked_at)
            .where(user_achievements.c.user_id == user_id)
        ).all()
    return {row.achievement_id: row.unlocked_at for row in rows}


def unpaid_unlocks(user_id: Optional[str] = None) -> List[Tuple[str, str, int]]:
    """Unlock rows with no matching reward credit, as (user_id, achievement_id, reward)."""
    join_on = and_(
        credit_ledger.c.user_id == user_achievements.c.user_id,
        credit_ledger.c.reason == literal(REWARD_REASON_PREFIX) + user_achievements.c.achievement_id,
    )
    query = (
        select(
            user_achievements.c.user_id,
            user_achievements.c.achievement_id,
            user_achievements.c.reward_amount,
        )
        .select_from(user_achievements.outerjoin(credit_ledger, join_on))
        .where(credit_ledger.c.id.is_(None))
        .order_by(user_achievements.c.id)
    )
    if user_id is not None:
        query = query.where(user_achievements.c.user_id == user_id)

    with get_db_session() as session:
        rows = session.execute(query).all()
    return [(row.user_id, row.achievement_id, row.reward_amount) for row in rows]


def _pay_reward(user_id: str, achievement_id: str, reward: int) -> bool:
    """Credit one reward. Failures are logged and left for the next settlement."""
    try:
        result = credit(user_id, reward, reward_reason(achievement_id), mode="top_up")
    except Exception:
        logger.warning(
            "achievement.reward_failed",
            exc_info=True,
            extra={"user_id": user_id, "event_type": "achievement.reward", "achievement_id": achievement_id},
        )
        return False
    return result.applied


def settle_unpaid_rewards(user_id: str) -> int:
    """Pay rewards for unlocks whose credit never landed. Returns credits paid."""
    paid = 0
    for owner, achievement_id, reward in unpaid_unlocks(user_id):
        if _pay_reward(owner, achievement_id, reward):
            paid += reward
            log_event(
                "info",
                "achievement.reward_settled",
                user_id=owner,
                event_type="achievement.reward",
                extra={"achievement_id": achievement_id, "amount": reward},
            )
    return paid


def evaluate(user_id: str, now: Optional[datetime] = None) -> EvaluationResult:
    """
    Unlock every qualifying achievement the user does not hold yet and pay its reward.

    Returns only the achievements this call unlocked; ids a concurrent
    evaluator inserted first are left to that evaluator.
    """
    ts = now or datetime.now(timezone.utc)
    settle_unpaid_rewards(user_id)

    metrics = load_metrics(user_id)
    already = _unlocked(user_id)
    candidates = [item for item in qualifying(metrics) if item.id not in already]
    if not candidates:
        return EvaluationResult()

    rows = [
        {
            "user_id": user_id,
            "achievement_id": item.id,
            "reward_amount": item.reward,
            "catalog_version": CATALOG_VERSION,
            "unlocked_at": ts,
        }
        for item in candidates
    ]
    with get_db_session() as session:
        inserted = set(
            insert_ignore_returning(
                session,
                user_achievements,
                rows,
                conflict_columns=("user_id", "achievement_id"),
                returning_column="achievement_id",
            )
        )

    result = EvaluationResult()
    for item in candidates:
        if item.id not in inserted:
            continue
        _pay_reward(user_id, item.id, item.reward)
        result.newly_unlocked.append(UnlockedAchievement(id=item.id, title=item.title, reward=item.reward))
        result.total_awarded += item.reward

    if result.newly_unlocked:
        log_event(
            "info",
            "achievement.unlocked",
            user_id=user_id,
            event_type="achievement.unlock",
            extra={
                "achievement_ids": ",".join(item.id for item in result.newly_unlocked),
                "amount": result.total_awarded,
            },
        )
    return result


def list_achievements(user_id: str) -> List[Dict[str, Any]]:
    """Full catalog with the user's unlock state and progress toward each threshold."""
    metrics = load_metrics(user_id)
    unlocked = _unlocked(user_id)
    items = []
    for item in ACHIEVEMENTS:
        unlocked_at = unlocked.get(item.id)
        items.append(
            {
                "id": item.id,
                "title": item.title,
                "metric": item.metric,
                "threshold": item.threshold,
                "rewardAmount": item.reward,
                "unlocked": item.id in unlocked,
                "unlockedAt": unlocked_at.isoformat() if unlocked_at else None,
                "progress": min(metrics.get(item.metric, 0), item.threshold),
            }
        )
    return items
