"""Plan and status mapping between Stripe objects and the credit ledger."""
from typing import Any, Dict, Optional

from recipe_credits.core.config import settings

PLAN_GRANTS: Dict[str, int] = {
    "weekly": 5,
    "monthly": 20,
    "yearly": 240,
}
DEFAULT_PLAN = "monthly"

INTERVAL_TO_PLAN = {
    "week": "weekly",
    "month": "monthly",
    "year": "yearly",
}

STRIPE_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "incomplete_expired": "cancelled",
}


def grant_for_plan(plan_id: Optional[str]) -> int:
    return PLAN_GRANTS.get(plan_id or DEFAULT_PLAN, PLAN_GRANTS[DEFAULT_PLAN])


def map_stripe_status(stripe_status: Optional[str]) -> Optional[str]:
    return STRIPE_STATUS_MAP.get(stripe_status or "")


def _configured_prices() -> Dict[str, str]:
    prices = {
        settings.STRIPE_PRICE_WEEKLY: "weekly",
        settings.STRIPE_PRICE_MONTHLY: "monthly",
        settings.STRIPE_PRICE_YEARLY: "yearly",
    }
    return {price_id: plan for price_id, plan in prices.items() if price_id}


def plan_for_price(price: Optional[Dict[str, Any]]) -> Optional[str]:
    """Configured price ids win; otherwise the price's billing interval decides."""
    if not price:
        return None
    plan = _configured_prices().get(price.get("id"))
    if plan:
        return plan
    recurring = price.get("recurring") or {}
    return INTERVAL_TO_PLAN.get(recurring.get("interval"))


def first_item(container: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """First element of a Stripe list object (subscription items, invoice lines)."""
    items = (container or {}).get("data") or []
    return items[0] if items else {}
