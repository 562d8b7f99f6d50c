"""
Integration tests for profile and subscription read routes
"""
from unittest.mock import patch

from app.core.permissions import AccessLevel
from app.models.user import User
from app.services.identity import IdentityProviderError
from tests.factories import FUTURE_PERIOD_END_MS, make_admin, make_paid_user, make_user


def test_me_returns_profile_and_admin_flag(client, db, sign_in):
    make_admin(db, make_user(db, "admin_1", name="Grace"), AccessLevel.PARTIAL)
    sign_in("admin_1")

    body = client.get("/api/users/me").json()
    assert body["clerk_id"] == "admin_1"
    assert body["name"] == "Grace"
    assert body["is_admin"] is True


def test_me_404_before_sync(client, sign_in):
    sign_in("user_new")
    response = client.get("/api/users/me")
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_sync_creates_missing_account_from_identity(client, db, sign_in):
    sign_in("user_new")
    clerk_user = {
        "id": "user_new",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email_addresses": [{"id": "idn_1", "email_address": "ada@example.com"}],
        "primary_email_address_id": "idn_1",
    }
    with patch("app.services.identity.get_user", return_value=clerk_user):
        response = client.post("/api/users/me/sync")

    assert response.status_code == 200
    assert response.json()["subscription_plan_id"] == "free"
    assert db.query(User).one().email == "ada@example.com"


def test_sync_upstream_failure_is_502(client, sign_in):
    sign_in("user_new")
    with patch("app.services.identity.get_user", side_effect=IdentityProviderError("down")):
        assert client.post("/api/users/me/sync").status_code == 502


def test_profile_update_mirrors_name_to_identity(client, db, sign_in):
    make_paid_user(db, "user_1")
    sign_in("user_1")

    with patch("app.services.identity.update_name") as update_name:
        response = client.put("/api/users/me", json={"name": "Ada King Lovelace"})

    assert response.status_code == 200
    update_name.assert_called_once_with("user_1", "Ada", "King Lovelace")
    assert response.json()["name"] == "Ada King Lovelace"
    assert response.json()["subscription_plan_id"] == "pro"


def test_profile_update_ignores_billing_fields(client, db, sign_in):
    make_user(db, "user_1")
    sign_in("user_1")

    response = client.put("/api/users/me", json={"subscription_plan_id": "enterprise", "profile_picture_url": "https://x/y.png"})
    assert response.status_code == 200
    assert response.json()["subscription_plan_id"] == "free"
    assert response.json()["profile_picture_url"] == "https://x/y.png"


def test_subscription_for_free_account_has_null_billing_fields(client, db, sign_in):
    make_user(db, "user_1")
    sign_in("user_1")

    body = client.get("/api/users/me/subscription").json()
    assert body["plan_id"] == "free"
    assert body["stripe_customer_id"] is None
    assert body["stripe_subscription_id"] is None


def test_subscription_for_cancelled_paid_account(client, db, sign_in):
    make_paid_user(db, "user_1", status="canceled", auto_renew=False)
    sign_in("user_1")

    body = client.get("/api/users/me/subscription").json()
    assert body["plan_name"] == "Pro"
    assert body["has_active_access"] is True
    assert body["current_period_end"] == FUTURE_PERIOD_END_MS


def test_subscription_after_downgrade_reads_expired(client, db, sign_in):
    make_user(db, "user_1", stripe_customer_id="cus_1", subscription_status="canceled", auto_renew=False)
    sign_in("user_1")

    body = client.get("/api/users/me/subscription").json()
    assert body["plan_id"] == "free"
    assert body["status_text"] == "Expired"
    assert body["has_active_access"] is False


def test_subscription_404_without_account(client, sign_in):
    sign_in("ghost")
    assert client.get("/api/users/me/subscription").status_code == 404
