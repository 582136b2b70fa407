"""
Admin-only credit operations.
Requires X-Admin-Key header for all endpoints.
"""

import logging

from fastapi import APIRouter, Depends

from recipe_credits.core.admin_auth import AdminActor, require_admin
from recipe_credits.features.balance.audit import audit_balances

logger = logging.getLogger("recipe_credits.admin")

router = APIRouter(prefix="/v1/admin/credits", tags=["admin"])


@router.get("/audit")
def get_credit_audit(actor: AdminActor = Depends(require_admin)):
    """Ledger invariant report. Read-only; nothing is repaired."""
    logger.info("admin.credit_audit", extra={"actor": actor.actor_id})
    return audit_balances()
