"""
Unit tests for the plan catalog and access helpers
"""
from app.core.plans import (
    can_upgrade_to_plan,
    get_default_plan,
    get_plan,
    has_access_to_plan,
    has_active_access,
    monthly_amount,
    plan_id_from_price_id,
    price_id_for,
    subscription_status_text,
)

NOW = 1_800_000_000_000
LATER = NOW + 86_400_000
EARLIER = NOW - 86_400_000


def test_catalog_lookups():
    assert get_default_plan()["id"] == "free"
    assert get_plan("pro")["name"] == "Pro"
    assert get_plan("gold") is None
    assert monthly_amount("enterprise") == 49
    assert monthly_amount("gold") == 0


def test_price_ids_round_trip_through_env():
    assert price_id_for("pro", "monthly") == "price_pro_monthly"
    assert price_id_for("pro", "weekly") == ""
    assert plan_id_from_price_id("price_enterprise_annual") == "enterprise"
    assert plan_id_from_price_id("price_unknown") is None
    assert plan_id_from_price_id(None) is None


def test_plan_ordering():
    assert has_access_to_plan("enterprise", "pro")
    assert not has_access_to_plan("free", "pro")
    assert can_upgrade_to_plan("free", "pro")
    assert not can_upgrade_to_plan("enterprise", "pro")


def test_active_access():
    assert has_active_access("active", LATER, now_ms=NOW)
    assert has_active_access("trialing", None, now_ms=NOW)
    assert not has_active_access("active", EARLIER, now_ms=NOW)
    assert not has_active_access("past_due", LATER, now_ms=NOW)


def test_canceled_subscription_keeps_access_until_period_end():
    assert has_active_access("canceled", LATER, now_ms=NOW)
    assert not has_active_access("canceled", EARLIER, now_ms=NOW)
    assert not has_active_access("canceled", None, now_ms=NOW)


def test_status_text():
    assert subscription_status_text("active", LATER, True, now_ms=NOW) == "Active"
    assert subscription_status_text("active", LATER, False, now_ms=NOW) == "Cancels at period end"
    assert subscription_status_text("canceled", EARLIER, False, now_ms=NOW) == "Expired"
    assert subscription_status_text("canceled", LATER, False, now_ms=NOW) == "Cancelled (access until period end)"
    assert subscription_status_text("canceled", None, False, now_ms=NOW) == "Expired"
    assert subscription_status_text("past_due", now_ms=NOW) == "Payment failed"
