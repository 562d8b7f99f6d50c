import os
import time
from typing import Dict, List, Optional

# Plan catalog, ascending order of entitlement.
# Price ids come from the billing provider dashboard.
SUBSCRIPTION_PLANS: List[Dict] = [
    {
        "id": "free",
        "name": "Basic",
        "price_monthly": 0,
        "price_annual": 0,
        "featured": False,
        "stripe_price_id_monthly": "",
        "stripe_price_id_annual": "",
    },
    {
        "id": "pro",
        "name": "Pro",
        "price_monthly": 19,
        "price_annual": 99,
        "featured": True,
        "stripe_price_id_monthly": os.getenv("STRIPE_PRICE_PRO_MONTHLY", ""),
        "stripe_price_id_annual": os.getenv("STRIPE_PRICE_PRO_ANNUAL", ""),
    },
    {
        "id": "enterprise",
        "name": "Enterprise",
        "price_monthly": 49,
        "price_annual": 499,
        "featured": False,
        "stripe_price_id_monthly": os.getenv("STRIPE_PRICE_ENTERPRISE_MONTHLY", ""),
        "stripe_price_id_annual": os.getenv("STRIPE_PRICE_ENTERPRISE_ANNUAL", ""),
    },
]

DEFAULT_PLAN_ID = "free"
BILLING_PERIODS = ("monthly", "annual")


def get_plan(plan_id: Optional[str]) -> Optional[Dict]:
    for plan in SUBSCRIPTION_PLANS:
        if plan["id"] == plan_id:
            return plan
    return None


def get_default_plan() -> Dict:
    return get_plan(DEFAULT_PLAN_ID)


def price_id_for(plan_id: str, billing_period: str) -> str:
    """Billing price id for a plan/period; empty string when not configured."""
    plan = get_plan(plan_id)
    if not plan or billing_period not in BILLING_PERIODS:
        return ""
    return plan[f"stripe_price_id_{billing_period}"]


def plan_id_from_price_id(price_id: Optional[str]) -> Optional[str]:
    if not price_id:
        return None
    for plan in SUBSCRIPTION_PLANS:
        if price_id in (plan["stripe_price_id_monthly"], plan["stripe_price_id_annual"]):
            return plan["id"]
    return None


def _plan_index(plan_id: Optional[str]) -> int:
    for index, plan in enumerate(SUBSCRIPTION_PLANS):
        if plan["id"] == plan_id:
            return index
    return -1


def has_access_to_plan(current_plan_id: Optional[str], required_plan_id: str) -> bool:
    return _plan_index(current_plan_id) >= _plan_index(required_plan_id) >= 0


def can_upgrade_to_plan(current_plan_id: Optional[str], target_plan_id: str) -> bool:
    return _plan_index(target_plan_id) > _plan_index(current_plan_id)


def monthly_amount(plan_id: Optional[str]) -> int:
    plan = get_plan(plan_id)
    return plan["price_monthly"] if plan else 0


def _now_ms() -> int:
    return int(time.time() * 1000)


def has_active_access(status: str, current_period_end: Optional[int], now_ms: Optional[int] = None) -> bool:
    """Active/trialing subscriptions until expiry; canceled ones keep access until period end."""
    now_ms = _now_ms() if now_ms is None else now_ms
    not_expired = not current_period_end or current_period_end > now_ms
    if status in ("active", "trialing"):
        return not_expired
    if status == "canceled":
        return bool(current_period_end) and current_period_end > now_ms
    return False


def subscription_status_text(
    status: str,
    current_period_end: Optional[int] = None,
    auto_renew: Optional[bool] = None,
    now_ms: Optional[int] = None,
) -> str:
    now_ms = _now_ms() if now_ms is None else now_ms
    expired = bool(current_period_end) and current_period_end < now_ms
    if status == "active":
        if expired:
            return "Expired"
        if auto_renew is False:
            return "Cancels at period end"
        return "Active"
    if status == "trialing":
        return "Trial"
    if status == "canceled":
        # No period end left means the subscription is gone, not winding down
        if expired or not current_period_end:
            return "Expired"
        return "Cancelled (access until period end)"
    if status == "past_due":
        return "Payment failed"
    if status == "incomplete":
        return "Payment incomplete"
    return status
