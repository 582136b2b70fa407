from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

SubscriptionStatus = Literal["trialing", "active", "past_due", "cancelled"]
PlanId = Literal["weekly", "monthly", "yearly"]
CreditMode = Literal["top_up", "replace"]

SPENDABLE_STATUSES = frozenset({"trialing", "active"})


@dataclass
class SubscriptionRecord:
    """
    A user's credit balance and subscription status. No DB concerns.

    granted_lifetime - used_lifetime == balance holds for every committed row.
    """

    user_id: str
    balance: int = 0
    used_lifetime: int = 0
    granted_lifetime: int = 0
    status: SubscriptionStatus = "trialing"
    plan_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None

    @property
    def can_spend(self) -> bool:
        return self.status in SPENDABLE_STATUSES


@dataclass(frozen=True)
class DebitResult:
    new_balance: int
    new_used: int


@dataclass(frozen=True)
class CreditResult:
    new_balance: int
    applied: bool
