"""
Integration tests for the admin API
"""
from unittest.mock import patch

import pytest

from app.core.permissions import AccessLevel
from app.models.admin import Admin
from app.models.user import User
from app.services.billing import BillingError
from app.services.identity import IdentityProviderError
from tests.factories import make_admin, make_paid_user, make_user, subscription_snapshot


@pytest.fixture
def full_admin(db, sign_in):
    admin = make_admin(db, make_user(db, "admin_full", name="Root"), AccessLevel.FULL)
    sign_in("admin_full", AccessLevel.FULL)
    return admin


@pytest.fixture
def role_sync():
    with patch("app.services.identity.set_role") as set_role:
        yield set_role


# ---------------------------------------------------------------------------
# Users & subscriptions
# ---------------------------------------------------------------------------

def test_limited_admin_can_list_users(client, db, sign_in):
    make_user(db, "admin_ltd")
    make_user(db, "user_1")
    sign_in("admin_ltd", AccessLevel.LIMITED)

    response = client.get("/api/admin/users")
    assert response.status_code == 200
    assert {row["clerk_id"] for row in response.json()} == {"admin_ltd", "user_1"}


def test_subscriptions_listing_and_analytics(client, db, sign_in):
    make_user(db, "admin_p")
    make_user(db, "free_user")
    make_paid_user(db, "pro_user", email="b@example.com", subscription_plan_id="pro")
    make_paid_user(db, "ent_user", email="a@example.com", subscription_plan_id="enterprise")
    make_paid_user(db, "late_user", email="c@example.com", status="past_due", subscription_plan_id="pro")
    sign_in("admin_p", AccessLevel.PARTIAL)

    body = client.get("/api/admin/subscriptions", params={"sort_by": "email"}).json()
    assert [row["email"] for row in body["subscriptions"]] == ["a@example.com", "b@example.com", "c@example.com"]
    assert body["analytics"] == {"total_paying_users": 3, "total_mrr": 68, "expected_arr": 816}

    filtered = client.get("/api/admin/subscriptions", params={"plan": "enterprise"}).json()
    assert [row["clerk_id"] for row in filtered["subscriptions"]] == ["ent_user"]


def test_subscriptions_sorted_by_amount_desc(client, db, sign_in):
    make_user(db, "admin_p")
    make_paid_user(db, "pro_user", subscription_plan_id="pro")
    make_paid_user(db, "ent_user", subscription_plan_id="enterprise")
    sign_in("admin_p", AccessLevel.PARTIAL)

    body = client.get("/api/admin/subscriptions", params={"sort_by": "amount", "order": "desc"}).json()
    assert [row["clerk_id"] for row in body["subscriptions"]] == ["ent_user", "pro_user"]


def test_toggle_auto_renew(client, db, sign_in):
    make_user(db, "admin_p")
    make_paid_user(db, "user_1", stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
    sign_in("admin_p", AccessLevel.PARTIAL)

    with patch("app.services.billing.retrieve_subscription", return_value=subscription_snapshot("sub_1", "cus_1")), \
            patch("app.services.billing.set_cancel_at_period_end",
                  return_value=subscription_snapshot("sub_1", "cus_1", cancel_at_period_end=True)):
        response = client.post("/api/admin/toggle-auto-renew", json={"subscription_id": "sub_1", "auto_renew": False})

    assert response.status_code == 200
    assert response.json()["status"] == "canceled"


def test_toggle_auto_renew_denied_for_limited(client, db, sign_in):
    make_user(db, "admin_ltd")
    sign_in("admin_ltd", AccessLevel.LIMITED)
    response = client.post("/api/admin/toggle-auto-renew", json={"subscription_id": "sub_1", "auto_renew": False})
    assert response.status_code == 403


def test_toggle_auto_renew_error_mapping(client, db, sign_in):
    make_user(db, "admin_p")
    make_paid_user(db, "user_inc", status="incomplete", stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
    sign_in("admin_p", AccessLevel.PARTIAL)
    body = {"subscription_id": "sub_1", "auto_renew": False}

    with patch("app.services.billing.retrieve_subscription", side_effect=BillingError("down")):
        assert client.post("/api/admin/toggle-auto-renew", json=body).status_code == 502
    with patch("app.services.billing.retrieve_subscription", return_value=subscription_snapshot("sub_1", "cus_1")):
        assert client.post("/api/admin/toggle-auto-renew", json=body).status_code == 409
    with patch("app.services.billing.retrieve_subscription", return_value=subscription_snapshot("sub_9", "cus_9")):
        assert client.post("/api/admin/toggle-auto-renew", json={"subscription_id": "sub_9", "auto_renew": True}).status_code == 404


def test_resync_subscription(client, db, sign_in):
    make_user(db, "admin_p")
    make_paid_user(db, "user_1", stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
    sign_in("admin_p", AccessLevel.PARTIAL)

    with patch("app.services.billing.retrieve_subscription",
               return_value=subscription_snapshot("sub_1", "cus_1", status="canceled")):
        response = client.post("/api/admin/subscriptions/user_1/resync")

    assert response.status_code == 200
    assert response.json()["subscription_plan_id"] == "free"


# ---------------------------------------------------------------------------
# Delete user
# ---------------------------------------------------------------------------

@pytest.fixture
def vendors():
    with patch("app.services.billing.cancel_subscription") as cancel, \
            patch("app.services.billing.delete_customer") as delete_customer, \
            patch("app.services.identity.delete_user") as delete_identity:
        yield {"cancel": cancel, "delete_customer": delete_customer, "delete_identity": delete_identity}


def test_delete_user_requires_full_access(client, db, sign_in, vendors):
    make_user(db, "admin_p")
    make_user(db, "user_1")
    sign_in("admin_p", AccessLevel.PARTIAL)

    response = client.post("/api/admin/delete-user", json={"clerk_id": "user_1"})
    assert response.status_code == 403
    assert "Full Access is required" in response.json()["error"]
    assert db.query(User).filter(User.clerk_id == "user_1").count() == 1


def test_delete_user(client, db, full_admin, vendors):
    make_paid_user(db, "user_1")
    response = client.post("/api/admin/delete-user", json={"clerk_id": "user_1"})

    assert response.status_code == 200
    assert response.json()["partial"] is False
    assert db.query(User).filter(User.clerk_id == "user_1").count() == 0


def test_delete_user_partial_success_is_207(client, db, full_admin, vendors):
    vendors["delete_customer"].side_effect = BillingError("stripe down")
    make_paid_user(db, "user_1")

    response = client.post("/api/admin/delete-user", json={"clerk_id": "user_1"})
    assert response.status_code == 207
    assert response.json()["cleanup"]["steps"]["customer_deleted"] is False


def test_delete_user_critical_failure_is_500(client, db, full_admin, vendors):
    vendors["delete_identity"].side_effect = IdentityProviderError("boom", status_code=500)
    make_user(db, "user_1")

    response = client.post("/api/admin/delete-user", json={"clerk_id": "user_1"})
    assert response.status_code == 500
    assert response.json()["failed_step"] == "identity_deleted"


def test_delete_user_guards(client, db, full_admin, vendors):
    make_admin(db, make_user(db, "admin_other"), AccessLevel.LIMITED)

    assert client.post("/api/admin/delete-user", json={"clerk_id": "admin_full"}).status_code == 400
    assert client.post("/api/admin/delete-user", json={"clerk_id": "admin_other"}).status_code == 403
    assert client.post("/api/admin/delete-user", json={"clerk_id": "ghost"}).status_code == 404
    for mock in vendors.values():
        mock.assert_not_called()


# ---------------------------------------------------------------------------
# Administrators
# ---------------------------------------------------------------------------

def test_list_administrators_full_only(client, db, sign_in):
    make_user(db, "admin_p")
    sign_in("admin_p", AccessLevel.PARTIAL)
    assert client.get("/api/admin/administrators").status_code == 403


def test_grant_admin(client, db, full_admin, role_sync):
    make_user(db, "user_1")

    response = client.post("/api/admin/administrators", json={"clerk_id": "user_1", "access_level": "Partial Access"})
    assert response.status_code == 201
    assert response.json()["access_level"] == "Partial Access"
    assert response.json()["role_synced"] is True
    role_sync.assert_called_once_with("user_1", "admin-partial")

    listing = client.get("/api/admin/administrators").json()
    assert {row["clerk_id"] for row in listing} == {"admin_full", "user_1"}


def test_grant_admin_twice_is_409(client, db, full_admin, role_sync):
    make_user(db, "user_1")
    client.post("/api/admin/administrators", json={"clerk_id": "user_1", "access_level": "Limited Access"})
    response = client.post("/api/admin/administrators", json={"clerk_id": "user_1", "access_level": "Full Access"})
    assert response.status_code == 409


def test_grant_admin_survives_role_sync_failure(client, db, full_admin, role_sync):
    role_sync.side_effect = IdentityProviderError("down")
    make_user(db, "user_1")

    response = client.post("/api/admin/administrators", json={"clerk_id": "user_1", "access_level": "Limited Access"})
    assert response.status_code == 201
    assert response.json()["role_synced"] is False
    assert db.query(Admin).filter(Admin.clerk_id == "user_1").count() == 1


def test_change_admin_level(client, db, full_admin, role_sync):
    make_admin(db, make_user(db, "admin_2"), AccessLevel.LIMITED)

    response = client.patch("/api/admin/administrators/admin_2", json={"access_level": "Full Access"})
    assert response.status_code == 200
    assert response.json()["access_level"] == "Full Access"
    role_sync.assert_called_once_with("admin_2", "admin-full")


def test_cannot_change_own_level(client, db, full_admin, role_sync):
    response = client.patch("/api/admin/administrators/admin_full", json={"access_level": "Limited Access"})
    assert response.status_code == 400


def test_remove_admin_clears_role(client, db, full_admin, role_sync):
    make_admin(db, make_user(db, "admin_2"), AccessLevel.PARTIAL)

    response = client.delete("/api/admin/administrators/admin_2")
    assert response.status_code == 200
    role_sync.assert_called_once_with("admin_2", None)
    assert db.query(Admin).filter(Admin.clerk_id == "admin_2").count() == 0
    # The account itself stays
    assert db.query(User).filter(User.clerk_id == "admin_2").count() == 1


def test_last_full_admin_cannot_be_removed(client, db, sign_in, role_sync):
    # Caller holds Full Access through claims only; the store has a single Full admin
    make_user(db, "caller")
    make_admin(db, make_user(db, "admin_only"), AccessLevel.FULL)
    sign_in("caller", AccessLevel.FULL)

    assert client.delete("/api/admin/administrators/admin_only").status_code == 400
    assert client.patch(
        "/api/admin/administrators/admin_only", json={"access_level": "Partial Access"}
    ).status_code == 400
