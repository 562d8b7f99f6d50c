"""
Send verification-code emails via Resend.
Without RESEND_API_KEY this is a no-op (logged) so local development keeps working.
"""
import logging
import os

import resend

from app.services.verification_codes import CodePurpose, VERIFICATION_CODE_TTL_SECONDS

logger = logging.getLogger(__name__)

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "").strip()
FROM_EMAIL = os.getenv("EMAIL_FROM", "Accounts <no-reply@example.com>")
APP_NAME = os.getenv("APP_NAME", "SaaS Starter")

_SUBJECTS = {
    CodePurpose.PASSWORD_RESET: "Reset your {app} password",
    CodePurpose.PASSWORD_CHANGE: "Confirm your {app} password change",
}


def send_verification_code_email(to_email: str, code: str, purpose: CodePurpose) -> bool:
    """
    Returns True if handed to Resend, False if skipped or failed.
    Never raises: the caller's response must not reveal delivery problems.
    """
    if not RESEND_API_KEY or not to_email:
        logger.warning("[email] RESEND_API_KEY not set; verification email skipped")
        return False

    resend.api_key = RESEND_API_KEY
    minutes = VERIFICATION_CODE_TTL_SECONDS // 60
    subject = _SUBJECTS[CodePurpose(purpose)].format(app=APP_NAME)
    html = f"""
    <p>Hi,</p>
    <p>Your verification code is:</p>
    <p style="font-size:24px;letter-spacing:4px"><strong>{code}</strong></p>
    <p>It expires in {minutes} minutes. If you did not request this, you can ignore this email.</p>
    <p>The {APP_NAME} team</p>
    """

    try:
        resend.Emails.send({
            "from": FROM_EMAIL,
            "to": [to_email],
            "subject": subject,
            "html": html.strip(),
        })
        logger.info("[email] %s code sent", CodePurpose(purpose).value)
        return True
    except Exception as e:
        logger.error("[email] Resend send failed: %s", e)
        return False
