from fastapi import APIRouter, Depends

from recipe_credits.core.auth import get_current_user_id
from recipe_credits.features.streaks.service import streak_tracker

router = APIRouter()


@router.get("/v1/streaks/current")
def get_current_streak(user_id: str = Depends(get_current_user_id)):
    """Return the current streak state for a user."""
    return streak_tracker.get_state(user_id).to_dict()


@router.post("/v1/streaks/reset-check")
def reset_check(user_id: str = Depends(get_current_user_id)):
    """Zero a lapsed streak (app open). Best streak is kept."""
    return streak_tracker.check_reset(user_id).to_dict()
