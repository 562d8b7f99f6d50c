"""
Process-wide ephemeral stores, injected into routes through FastAPI dependencies.
Swap the InMemoryStore instances for a shared backend when running several workers.
"""
from app.services.ephemeral_store import InMemoryStore
from app.services.rate_limiter import RateLimiter
from app.services.verification_codes import VerificationCodeStore

verification_codes = VerificationCodeStore(InMemoryStore())
rate_limiter = RateLimiter(InMemoryStore())


def get_verification_codes() -> VerificationCodeStore:
    return verification_codes


def get_rate_limiter() -> RateLimiter:
    return rate_limiter
