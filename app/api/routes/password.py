"""
Password change (signed-in) and password reset (signed-out) via emailed
verification codes. Passwords themselves live with the identity provider.
"""
import logging
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from app.core.errors import api_error, INVALID_CODE, RATE_LIMITED, UPSTREAM_ERROR, VALIDATION_ERROR
from app.db.session import get_db
from app.dependencies.auth import get_current_account
from app.dependencies.stores import get_rate_limiter, get_verification_codes
from app.models.user import User
from app.schemas.auth import (
    GuestResetCodeRequest,
    GuestResetVerifyRequest,
    MessageResponse,
    MIN_PASSWORD_LENGTH,
    PasswordUpdateRequest,
)
from app.services import identity
from app.services.email import send_verification_code_email
from app.services.identity import IdentityProviderError
from app.services.rate_limiter import RateLimiter, get_client_ip, rate_limit_key
from app.services.verification_codes import CodePurpose, VerificationCodeStore

logger = logging.getLogger(__name__)

router = APIRouter()

GENERIC_RESET_MESSAGE = "If an account exists with this email, a verification code has been sent."
INVALID_CODE_MESSAGE = "Invalid or expired verification code."
PWNED_PASSWORD_MESSAGE = (
    "This password has appeared in a data breach. Please choose a different password."
)


def _check_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise api_error(
            status.HTTP_400_BAD_REQUEST,
            VALIDATION_ERROR,
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
        )


def _consume_attempt(limiter: RateLimiter, key: str, action: str) -> None:
    """Check, then count the attempt whatever happens next."""
    if not limiter.check(key, action):
        retry_after = limiter.retry_after(key, action)
        raise api_error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            RATE_LIMITED,
            "Too many attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
    limiter.increment(key, action)


def _set_password(clerk_id: str, password: str) -> None:
    try:
        identity.update_password(clerk_id, password)
    except IdentityProviderError as e:
        if e.code == "form_password_pwned":
            raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, PWNED_PASSWORD_MESSAGE)
        if e.status_code == 422:
            raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, str(e))
        raise api_error(status.HTTP_502_BAD_GATEWAY, UPSTREAM_ERROR, "Failed to update password")


@router.post("/request-code", response_model=MessageResponse)
def request_password_change_code(
    request: Request,
    user: User = Depends(get_current_account),
    codes: VerificationCodeStore = Depends(get_verification_codes),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Email a code confirming a password change for the signed-in user."""
    _consume_attempt(limiter, rate_limit_key(user.clerk_id, get_client_ip(request)), "password_change")
    code = codes.issue(user.clerk_id, CodePurpose.PASSWORD_CHANGE)
    send_verification_code_email(user.email, code, CodePurpose.PASSWORD_CHANGE)
    return {"success": True, "message": "Verification code sent to your email."}


@router.post("/update", response_model=MessageResponse)
def update_password(
    body: PasswordUpdateRequest,
    request: Request,
    user: User = Depends(get_current_account),
    codes: VerificationCodeStore = Depends(get_verification_codes),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    _check_password(body.new_password)
    _consume_attempt(limiter, rate_limit_key(user.clerk_id, get_client_ip(request)), "password_change_verify")

    if not codes.verify(user.clerk_id, CodePurpose.PASSWORD_CHANGE, body.code):
        raise api_error(status.HTTP_400_BAD_REQUEST, INVALID_CODE, INVALID_CODE_MESSAGE)

    _set_password(user.clerk_id, body.new_password)
    logger.info("[password] changed for %s", user.clerk_id)
    return {"success": True, "message": "Password updated successfully."}


@router.post("/guest-reset/request-code", response_model=MessageResponse)
def request_password_reset_code(
    body: GuestResetCodeRequest,
    request: Request,
    db: Session = Depends(get_db),
    codes: VerificationCodeStore = Depends(get_verification_codes),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Public. Same response whether or not the email has an account; the attempt is
    rate limited on (email, client IP) either way.
    """
    email = body.email.strip().lower()
    _consume_attempt(limiter, rate_limit_key(email, get_client_ip(request)), "password_reset")

    user = db.query(User).filter(User.email == email).first()
    if user:
        code = codes.issue(email, CodePurpose.PASSWORD_RESET)
        send_verification_code_email(email, code, CodePurpose.PASSWORD_RESET)
    else:
        logger.info("[password] reset requested for unknown email")

    return {"success": True, "message": GENERIC_RESET_MESSAGE}


@router.post("/guest-reset/verify-code", response_model=MessageResponse)
def verify_password_reset_code(
    body: GuestResetVerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    codes: VerificationCodeStore = Depends(get_verification_codes),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    email = body.email.strip().lower()
    _check_password(body.new_password)
    _consume_attempt(limiter, rate_limit_key(email, get_client_ip(request)), "password_reset_verify")

    if not codes.verify(email, CodePurpose.PASSWORD_RESET, body.code):
        raise api_error(status.HTTP_400_BAD_REQUEST, INVALID_CODE, INVALID_CODE_MESSAGE)

    user = db.query(User).filter(User.email == email).first()
    clerk_id = user.clerk_id if user else None
    if not clerk_id:
        try:
            clerk_id = identity.find_user_id_by_email(email)
        except IdentityProviderError:
            raise api_error(status.HTTP_502_BAD_GATEWAY, UPSTREAM_ERROR, "Failed to reset password")
    if not clerk_id:
        # Code was only ever issued for known accounts; treat a vanished account like a bad code
        raise api_error(status.HTTP_400_BAD_REQUEST, INVALID_CODE, INVALID_CODE_MESSAGE)

    _set_password(clerk_id, body.new_password)
    logger.info("[password] reset completed for %s", clerk_id)
    return {"success": True, "message": "Password reset successfully. You can now sign in."}
