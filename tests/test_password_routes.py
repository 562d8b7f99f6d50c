"""
Integration tests for password change / guest reset with verification codes
"""
from unittest.mock import patch

import pytest

from app.services.identity import IdentityProviderError
from app.services.verification_codes import CodePurpose
from tests.factories import make_user


@pytest.fixture
def outbox():
    """Captures (email, code, purpose) instead of sending through Resend."""
    sent = []

    def capture(to_email, code, purpose):
        sent.append((to_email, code, purpose))
        return True

    with patch("app.api.routes.password.send_verification_code_email", side_effect=capture):
        yield sent


@pytest.fixture
def clerk_password():
    with patch("app.services.identity.update_password") as update:
        yield update


# ---------------------------------------------------------------------------
# Guest reset
# ---------------------------------------------------------------------------

def test_reset_request_same_response_for_unknown_email(client, db, outbox):
    make_user(db, "user_1", email="ada@example.com")

    known = client.post("/api/password/guest-reset/request-code", json={"email": "ada@example.com"})
    unknown = client.post("/api/password/guest-reset/request-code", json={"email": "nobody@example.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    assert [to for to, _, _ in outbox] == ["ada@example.com"]


def test_full_guest_reset_flow(client, db, outbox, clerk_password):
    make_user(db, "user_1", email="ada@example.com")
    client.post("/api/password/guest-reset/request-code", json={"email": "ADA@example.com"})
    _, code, purpose = outbox[0]
    assert purpose is CodePurpose.PASSWORD_RESET

    response = client.post("/api/password/guest-reset/verify-code", json={
        "email": "ada@example.com", "code": code, "new_password": "correct-horse-battery",
    })
    assert response.status_code == 200
    clerk_password.assert_called_once_with("user_1", "correct-horse-battery")

    # Single use
    again = client.post("/api/password/guest-reset/verify-code", json={
        "email": "ada@example.com", "code": code, "new_password": "correct-horse-battery",
    })
    assert again.status_code == 400
    assert again.json()["code"] == "INVALID_CODE"


def test_short_password_rejected_before_code_is_spent(client, db, outbox, clerk_password):
    make_user(db, "user_1", email="ada@example.com")
    client.post("/api/password/guest-reset/request-code", json={"email": "ada@example.com"})
    code = outbox[0][1]

    short = client.post("/api/password/guest-reset/verify-code", json={
        "email": "ada@example.com", "code": code, "new_password": "short",
    })
    assert short.status_code == 400
    assert short.json()["code"] == "VALIDATION_ERROR"

    ok = client.post("/api/password/guest-reset/verify-code", json={
        "email": "ada@example.com", "code": code, "new_password": "long-enough-now",
    })
    assert ok.status_code == 200


def test_expired_code(client, db, outbox, clock, clerk_password):
    make_user(db, "user_1", email="ada@example.com")
    client.post("/api/password/guest-reset/request-code", json={"email": "ada@example.com"})
    clock.advance(601)

    response = client.post("/api/password/guest-reset/verify-code", json={
        "email": "ada@example.com", "code": outbox[0][1], "new_password": "long-enough-now",
    })
    assert response.status_code == 400
    clerk_password.assert_not_called()


def test_reset_request_rate_limited_with_retry_after(client, db, outbox):
    for _ in range(10):
        assert client.post("/api/password/guest-reset/request-code", json={"email": "ada@example.com"}).status_code == 200

    response = client.post("/api/password/guest-reset/request-code", json={"email": "ada@example.com"})
    assert response.status_code == 429
    assert response.json()["code"] == "RATE_LIMITED"
    assert int(response.headers["Retry-After"]) > 0


def test_rate_limit_is_per_client_ip(client, db, outbox):
    for _ in range(10):
        client.post("/api/password/guest-reset/request-code", json={"email": "ada@example.com"},
                    headers={"X-Forwarded-For": "1.1.1.1"})
    other = client.post("/api/password/guest-reset/request-code", json={"email": "ada@example.com"},
                        headers={"X-Forwarded-For": "2.2.2.2"})
    assert other.status_code == 200


def test_reset_for_identity_without_local_account(client, db, codes, clerk_password):
    code = codes.issue("orphan@example.com", CodePurpose.PASSWORD_RESET)
    with patch("app.services.identity.find_user_id_by_email", return_value="user_orphan"):
        response = client.post("/api/password/guest-reset/verify-code", json={
            "email": "orphan@example.com", "code": code, "new_password": "long-enough-now",
        })
    assert response.status_code == 200
    clerk_password.assert_called_once_with("user_orphan", "long-enough-now")


def test_pwned_password_is_reported(client, db, outbox):
    make_user(db, "user_1", email="ada@example.com")
    client.post("/api/password/guest-reset/request-code", json={"email": "ada@example.com"})
    error = IdentityProviderError("Password has been found in an online data breach.", code="form_password_pwned", status_code=422)

    with patch("app.services.identity.update_password", side_effect=error):
        response = client.post("/api/password/guest-reset/verify-code", json={
            "email": "ada@example.com", "code": outbox[0][1], "new_password": "password123",
        })
    assert response.status_code == 400
    assert "data breach" in response.json()["error"]


# ---------------------------------------------------------------------------
# Signed-in change
# ---------------------------------------------------------------------------

def test_password_change_flow(client, db, sign_in, outbox, clerk_password):
    make_user(db, "user_1", email="ada@example.com")
    sign_in("user_1")

    assert client.post("/api/password/request-code").status_code == 200
    to_email, code, purpose = outbox[0]
    assert to_email == "ada@example.com"
    assert purpose is CodePurpose.PASSWORD_CHANGE

    response = client.post("/api/password/update", json={"code": code, "new_password": "a-new-password"})
    assert response.status_code == 200
    clerk_password.assert_called_once_with("user_1", "a-new-password")


def test_reset_code_cannot_be_used_for_change(client, db, sign_in, codes, clerk_password):
    make_user(db, "user_1", email="ada@example.com")
    sign_in("user_1")
    reset_code = codes.issue("user_1", CodePurpose.PASSWORD_RESET)

    response = client.post("/api/password/update", json={"code": reset_code, "new_password": "a-new-password"})
    assert response.status_code == 400
    clerk_password.assert_not_called()


def test_password_change_requires_sign_in(client):
    assert client.post("/api/password/request-code").status_code == 401
