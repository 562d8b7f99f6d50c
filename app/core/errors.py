"""
Machine-readable error codes shared by every route.
Callers branch on `code`; `error` is a safe, non-leaking message.
"""
from fastapi import HTTPException

AUTH_REQUIRED = "AUTH_REQUIRED"
PERMISSION_DENIED = "PERMISSION_DENIED"
NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
RATE_LIMITED = "RATE_LIMITED"
INVALID_CODE = "INVALID_CODE"
INVALID_FILE = "INVALID_FILE"
UPLOAD_FAILED = "UPLOAD_FAILED"
DELETE_FAILED = "DELETE_FAILED"
UPSTREAM_ERROR = "UPSTREAM_ERROR"
CONFLICT = "CONFLICT"
ADMIN_SELF_DELETE = "ADMIN_SELF_DELETE"


def api_error(status_code: int, code: str, message: str, headers: dict | None = None) -> HTTPException:
    """Build an HTTPException whose detail is `{"error": message, "code": code}`."""
    return HTTPException(
        status_code=status_code,
        detail={"error": message, "code": code},
        headers=headers,
    )
