"""
Balance audit.

Checks every subscription row and achievement unlock against the ledger's
invariants and reports violations. Report only: nothing is repaired or
refunded here, operators decide.

Checks:
1. granted_lifetime - used_lifetime == balance
2. balance, used_lifetime and granted_lifetime are non-negative
3. every unlocked achievement has its reward credit in the ledger
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import func, select

from recipe_credits.core.database import get_db_session, subscriptions
from recipe_credits.core.logging import log_event
from recipe_credits.features.achievements.evaluator import unpaid_unlocks


def audit_balances() -> Dict[str, Any]:
    """Run the audit and return a report."""
    with get_db_session() as session:
        checked = session.execute(select(func.count()).select_from(subscriptions)).scalar() or 0
        rows = session.execute(
            select(
                subscriptions.c.user_id,
                subscriptions.c.balance,
                subscriptions.c.used_lifetime,
                subscriptions.c.granted_lifetime,
            ).where(
                (subscriptions.c.granted_lifetime - subscriptions.c.used_lifetime != subscriptions.c.balance)
                | (subscriptions.c.balance < 0)
                | (subscriptions.c.used_lifetime < 0)
                | (subscriptions.c.granted_lifetime < 0)
            ).order_by(subscriptions.c.user_id)
        ).all()

    mismatches: List[Dict[str, Any]] = [
        {
            "user_id": row.user_id,
            "balance": row.balance,
            "used_lifetime": row.used_lifetime,
            "granted_lifetime": row.granted_lifetime,
            "difference": row.granted_lifetime - row.used_lifetime - row.balance,
        }
        for row in rows
    ]
    unpaid = [
        {"user_id": user_id, "achievement_id": achievement_id, "reward_amount": reward}
        for user_id, achievement_id, reward in unpaid_unlocks()
    ]

    report = {
        "status": "ok" if not mismatches and not unpaid else "violations",
        "checked_accounts": int(checked),
        "mismatches": mismatches,
        "unpaid_achievements": unpaid,
        "computed_at": datetime.now(timezone.utc).isoformat(),
    }
    log_event(
        "warning" if report["status"] != "ok" else "info",
        "credits.audit",
        event_type="credits.audit",
        extra={"mismatches": len(mismatches), "unpaid_achievements": len(unpaid), "checked_accounts": checked},
    )
    return report
