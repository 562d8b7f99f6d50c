"""
Tests for admin access resolution (claims first, admin store second) and page gating
"""
from app.core.permissions import AccessLevel
from app.dependencies.access_gate import (
    FromClaims,
    FromStore,
    Unresolved,
    level_from_claims,
    resolve_access_level,
)
from tests.factories import make_admin, make_user


def test_level_from_claims_reads_public_metadata():
    assert level_from_claims({"public_metadata": {"role": "admin-partial"}}) is AccessLevel.PARTIAL
    assert level_from_claims({"publicMetadata": {"role": "admin-full"}}) is AccessLevel.FULL
    assert level_from_claims({"metadata": {"role": "Limited Access"}}) is AccessLevel.LIMITED


def test_level_from_claims_takes_highest_of_several_roles():
    claims = {"public_metadata": {"role": ["admin-limited", "admin-full", "editor"]}}
    assert level_from_claims(claims) is AccessLevel.FULL


def test_level_from_claims_ignores_unknown_roles():
    assert level_from_claims({"public_metadata": {"role": "editor"}}) is None
    assert level_from_claims({"sub": "user_1"}) is None


def test_resolution_prefers_claims(db):
    make_admin(db, make_user(db, "admin_1"), AccessLevel.LIMITED)
    resolution = resolve_access_level({"sub": "admin_1", "public_metadata": {"role": "admin-full"}}, db)
    assert resolution == FromClaims(AccessLevel.FULL)


def test_resolution_falls_back_to_store_when_claims_lag(db):
    make_admin(db, make_user(db, "admin_1"), AccessLevel.PARTIAL)
    resolution = resolve_access_level({"sub": "admin_1"}, db)
    assert resolution == FromStore(AccessLevel.PARTIAL)
    assert resolution.source == "store"


def test_resolution_unresolved_for_regular_users(db):
    make_user(db, "user_1")
    resolution = resolve_access_level({"sub": "user_1"}, db)
    assert isinstance(resolution, Unresolved)
    assert resolution.level is None


def test_access_endpoint_reports_source_and_pages(client, db, sign_in):
    make_admin(db, make_user(db, "admin_1"), AccessLevel.LIMITED)
    sign_in("admin_1")

    response = client.get("/api/admin/access")
    assert response.status_code == 200
    body = response.json()
    assert body["level"] == "Limited Access"
    assert body["source"] == "store"
    assert "/admin/subscriptions" not in body["pages"]


def test_non_admin_is_refused(client, db, sign_in):
    make_user(db, "user_1")
    sign_in("user_1")

    response = client.get("/api/admin/access")
    assert response.status_code == 403
    assert response.json()["code"] == "PERMISSION_DENIED"


def test_signed_out_is_401(client):
    response = client.get("/api/admin/users")
    assert response.status_code == 401
    assert response.json()["code"] == "AUTH_REQUIRED"


def test_limited_admin_denied_subscriptions_page(client, db, sign_in):
    make_user(db, "admin_1")
    sign_in("admin_1", AccessLevel.LIMITED)

    response = client.get("/api/admin/subscriptions")
    assert response.status_code == 403
    assert "Partial Access is required" in response.json()["error"]


def test_access_check_endpoint(client, db, sign_in):
    make_user(db, "admin_1")
    sign_in("admin_1", AccessLevel.PARTIAL)

    allowed = client.get("/api/admin/access/check", params={"page": "/admin/settings"}).json()
    denied = client.get("/api/admin/access/check", params={"page": "/admin/administrators"}).json()
    assert allowed == {"page": "/admin/settings", "allowed": True, "message": None}
    assert denied["allowed"] is False
    assert "Full Access is required" in denied["message"]
