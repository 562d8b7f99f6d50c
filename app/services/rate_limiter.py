"""
Attempt limiter keyed by (subject + client IP, action).

Sliding window: each key keeps the timestamps of its attempts inside the last
RATE_LIMIT_WINDOW_SECONDS. check() runs before the guarded action; increment()
runs whatever the action's outcome, so failed and not-found attempts count too.
"""
import logging
import os
from typing import List, Optional

from fastapi import Request

from app.services.ephemeral_store import EphemeralStore

logger = logging.getLogger(__name__)

RATE_LIMIT_MAX_ATTEMPTS = int(os.getenv("RATE_LIMIT_MAX_ATTEMPTS", "10"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "3600"))

# All requests without a resolvable client IP share this bucket
UNKNOWN_IP = "unknown"


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, else the shared unknown bucket."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return UNKNOWN_IP


def rate_limit_key(subject: str, ip: Optional[str]) -> str:
    return f"{(subject or '').strip().lower()}:{ip or UNKNOWN_IP}"


class RateLimiter:
    def __init__(
        self,
        store: EphemeralStore,
        max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    @staticmethod
    def _entry_key(key: str, action: str) -> str:
        return f"ratelimit:{key}:{action}"

    def _live_attempts(self, entry_key: str) -> List[float]:
        cutoff = self.store.now() - self.window_seconds
        return [t for t in (self.store.get(entry_key) or []) if t > cutoff]

    def check(self, key: str, action: str) -> bool:
        """True while fewer than max_attempts were recorded inside the window."""
        entry_key = self._entry_key(key, action)
        with self.store.lock(entry_key):
            allowed = len(self._live_attempts(entry_key)) < self.max_attempts
        if not allowed:
            logger.warning("[rate limit] %s denied for %s", action, key.rsplit(":", 1)[-1])
        return allowed

    def increment(self, key: str, action: str) -> int:
        """Record one attempt; returns the number of attempts now inside the window."""
        entry_key = self._entry_key(key, action)
        with self.store.lock(entry_key):
            now = self.store.now()
            attempts = self._live_attempts(entry_key)
            attempts.append(now)
            self.store.set(entry_key, attempts, now + self.window_seconds)
        return len(attempts)

    def retry_after(self, key: str, action: str) -> int:
        """Seconds until the oldest attempt in the window ages out."""
        attempts = self._live_attempts(self._entry_key(key, action))
        if not attempts:
            return 0
        return max(0, int(attempts[0] + self.window_seconds - self.store.now()) + 1)

    def reset(self, key: str, action: str) -> None:
        self.store.delete(self._entry_key(key, action))

    def sweep(self) -> int:
        return self.store.sweep()
