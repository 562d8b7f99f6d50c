"""
Single-use verification codes for password reset / password change.

- 6-digit numeric codes from `secrets`, stored as SHA-256 digests only.
- Keyed by purpose + subject, so a password_reset code never verifies a password_change.
- Issuing replaces any unconsumed code for the same key.
- verify() re-checks expiry, caps attempts, and deletes the record on success under a
  per-key lock, so concurrent verifies of one code see exactly one success.
"""
import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.services.ephemeral_store import EphemeralStore

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
VERIFICATION_CODE_TTL_SECONDS = int(os.getenv("VERIFICATION_CODE_TTL_SECONDS", "600"))
VERIFICATION_CODE_MAX_ATTEMPTS = int(os.getenv("VERIFICATION_CODE_MAX_ATTEMPTS", "5"))


class CodePurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"


@dataclass
class _CodeRecord:
    digest: str
    expires_at: float
    attempts: int = 0


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def generate_code() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(CODE_LENGTH))


def normalize_subject(subject: str) -> str:
    return (subject or "").strip().lower()


class VerificationCodeStore:
    def __init__(
        self,
        store: EphemeralStore,
        ttl_seconds: int = VERIFICATION_CODE_TTL_SECONDS,
        max_attempts: int = VERIFICATION_CODE_MAX_ATTEMPTS,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts

    @staticmethod
    def key_for(subject: str, purpose: CodePurpose) -> str:
        return f"verification:{CodePurpose(purpose).value}:{normalize_subject(subject)}"

    def issue(self, subject: str, purpose: CodePurpose) -> str:
        """Create a fresh code for (subject, purpose), replacing any previous one."""
        key = self.key_for(subject, purpose)
        code = generate_code()
        with self.store.lock(key):
            expires_at = self.store.now() + self.ttl_seconds
            self.store.set(key, _CodeRecord(digest=_digest(code), expires_at=expires_at), expires_at)
        logger.info("[verification] issued %s code", CodePurpose(purpose).value)
        return code

    def verify(self, subject: str, purpose: CodePurpose, candidate: Optional[str]) -> bool:
        """
        True exactly once per issued code. Absent, expired, exhausted and mismatched
        codes all return False.
        """
        key = self.key_for(subject, purpose)
        with self.store.lock(key):
            record = self.store.get(key)
            if record is None:
                return False
            if record.expires_at <= self.store.now():
                self.store.delete(key)
                return False
            if record.attempts >= self.max_attempts:
                self.store.delete(key)
                logger.info("[verification] %s code exhausted", CodePurpose(purpose).value)
                return False

            record.attempts += 1
            if candidate and hmac.compare_digest(record.digest, _digest(candidate.strip())):
                self.store.delete(key)
                return True

            if record.attempts >= self.max_attempts:
                self.store.delete(key)
            else:
                self.store.set(key, record, record.expires_at)
            return False

    def has_code(self, subject: str, purpose: CodePurpose) -> bool:
        return self.store.get(self.key_for(subject, purpose)) is not None

    def sweep(self) -> int:
        return self.store.sweep()
