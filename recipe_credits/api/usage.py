from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from recipe_credits.core.auth import get_current_user_id
from recipe_credits.features.streaks.service import streak_tracker
from recipe_credits.features.usage.service import get_counters, record_cooking

router = APIRouter(prefix="/v1/usage", tags=["usage"])


class CookedEvent(BaseModel):
    reference_id: Optional[str] = Field(None, min_length=1, max_length=200)


def _counters_payload(user_id: str) -> dict:
    counters = get_counters(user_id)
    return {"recipesGenerated": counters.recipes_generated, "recipesCooked": counters.recipes_cooked}


@router.get("")
def get_usage(user_id: str = Depends(get_current_user_id)):
    """Counters behind the achievement metrics, plus the streak."""
    return {"counters": _counters_payload(user_id), "streak": streak_tracker.get_state(user_id).to_dict()}


@router.post("/cooked")
def record_cooked_event(event: CookedEvent, user_id: str = Depends(get_current_user_id)):
    recorded = record_cooking(user_id, reference_id=event.reference_id)
    return {"recorded": recorded, "counters": _counters_payload(user_id)}
