from fastapi import APIRouter, Depends

from recipe_credits.core.auth import get_current_user_id
from recipe_credits.features.achievements.catalog import CATALOG_VERSION
from recipe_credits.features.achievements.evaluator import evaluate, list_achievements

router = APIRouter(prefix="/v1/achievements", tags=["achievements"])


@router.post("/check")
def check_achievements(user_id: str = Depends(get_current_user_id)):
    """Unlock everything the user qualifies for and pay the rewards. Safe to call repeatedly."""
    return evaluate(user_id).to_dict()


@router.get("")
def get_achievements(user_id: str = Depends(get_current_user_id)):
    return {"catalogVersion": CATALOG_VERSION, "achievements": list_achievements(user_id)}
