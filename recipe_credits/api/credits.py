"""
Credits API.

- GET  /v1/credits/balance: balance, lifetime counters and subscription status
- GET  /v1/credits/check: can the user start a paid generation right now
- POST /v1/credits/debit: spend credits for a generation and log it
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from recipe_credits.core.auth import get_current_user_id
from recipe_credits.core.logging import log_event
from recipe_credits.features.balance.debit import debit
from recipe_credits.features.balance.store import check_spendable, get_balance_summary

router = APIRouter(prefix="/v1/credits", tags=["credits"])


class DebitRequest(BaseModel):
    amount: int = 1
    # Client id of the generation; a retried request is rejected, not charged twice
    reference_id: Optional[str] = Field(None, min_length=1, max_length=200)


@router.get("/balance")
def get_balance(user_id: str = Depends(get_current_user_id)):
    return get_balance_summary(user_id)


@router.get("/check")
def check_credits(user_id: str = Depends(get_current_user_id)):
    return check_spendable(user_id)


@router.post("/debit")
def debit_credits(request: DebitRequest, user_id: str = Depends(get_current_user_id)):
    """
    Debit credits after a generation completed and log the generation.

    Errors:
        402 insufficient_balance, 403 subscription_not_active,
        400 validation_error, 409 conflict (retry) or duplicate_reference
    """
    try:
        result = debit(user_id, request.amount, record_generation=True, reference_id=request.reference_id)
    except Exception as e:
        # The generation already happened; there is no compensation, only the record
        log_event(
            "warning",
            "generation.debit_failed",
            user_id=user_id,
            event_type="credits.debit",
            error_code=getattr(e, "code", "internal_error"),
            extra={"amount": request.amount},
        )
        raise
    return {"balance": result.new_balance, "used": result.new_used}
