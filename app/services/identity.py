"""
Identity provider seam (Clerk Backend API).
Thin wrapper over the REST endpoints the app needs; every call has a timeout and
failures surface as IdentityProviderError carrying Clerk's error code when present.
"""
import logging
import os
from typing import Optional

import requests

logger = logging.getLogger(__name__)

CLERK_SECRET_KEY = os.getenv("CLERK_SECRET_KEY", "")
CLERK_API_URL = os.getenv("CLERK_API_URL", "https://api.clerk.com/v1").rstrip("/")
CLERK_TIMEOUT_SECONDS = int(os.getenv("CLERK_TIMEOUT_SECONDS", "10"))


class IdentityProviderError(Exception):
    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


def _request(method: str, path: str, **kwargs):
    if not CLERK_SECRET_KEY:
        raise IdentityProviderError("Clerk is not configured (CLERK_SECRET_KEY missing)")
    url = f"{CLERK_API_URL}{path}"
    try:
        r = requests.request(
            method,
            url,
            headers={"Authorization": f"Bearer {CLERK_SECRET_KEY}"},
            timeout=CLERK_TIMEOUT_SECONDS,
            **kwargs,
        )
    except requests.exceptions.RequestException as e:
        logger.error("[identity] %s %s failed: %s", method, path, e)
        raise IdentityProviderError(f"Identity provider unreachable: {e}") from e

    if r.status_code >= 400:
        code = None
        message = f"Identity provider returned {r.status_code}"
        try:
            errors = r.json().get("errors") or []
            if errors:
                code = errors[0].get("code")
                message = errors[0].get("long_message") or errors[0].get("message") or message
        except ValueError:
            pass
        logger.error("[identity] %s %s -> %s (%s)", method, path, r.status_code, code)
        raise IdentityProviderError(message, code=code, status_code=r.status_code)
    if r.status_code == 204 or not r.content:
        return {}
    return r.json()


def primary_email(user: dict) -> Optional[str]:
    """Primary address of a Clerk user payload (webhook or API), else the first one listed."""
    addresses = user.get("email_addresses") or []
    primary_id = user.get("primary_email_address_id")
    for address in addresses:
        if primary_id and address.get("id") == primary_id:
            return address.get("email_address")
    if addresses:
        return addresses[0].get("email_address")
    return None


def display_name(user: dict) -> Optional[str]:
    parts = [user.get("first_name") or "", user.get("last_name") or ""]
    name = " ".join(p for p in parts if p).strip()
    return name or None


def split_name(name: str):
    """'Ada King Lovelace' -> ('Ada', 'King Lovelace')."""
    parts = (name or "").strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def get_user(clerk_id: str) -> dict:
    return _request("GET", f"/users/{clerk_id}")


def find_user_id_by_email(email: str) -> Optional[str]:
    users = _request("GET", "/users", params={"email_address": [email], "limit": 1})
    if isinstance(users, dict):
        users = users.get("data") or []
    return users[0]["id"] if users else None


def update_name(clerk_id: str, first_name: str, last_name: str) -> dict:
    return _request("PATCH", f"/users/{clerk_id}", json={"first_name": first_name, "last_name": last_name})


def update_password(clerk_id: str, password: str) -> None:
    _request("PATCH", f"/users/{clerk_id}", json={"password": password, "sign_out_of_other_sessions": True})


def set_role(clerk_id: str, role: Optional[str]) -> None:
    """Set (or clear with None) public_metadata.role; other metadata keys are merged."""
    _request("PATCH", f"/users/{clerk_id}/metadata", json={"public_metadata": {"role": role}})


def delete_user(clerk_id: str) -> None:
    _request("DELETE", f"/users/{clerk_id}")
