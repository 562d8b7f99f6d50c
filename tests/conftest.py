"""
Pytest configuration and fixtures for testing
"""
import os
import tempfile

# Must be set before the app is imported: plans read price ids and the /uploads
# mount resolves its directory at import time
os.environ.setdefault("UPLOADS_DIR", tempfile.mkdtemp(prefix="uploads-test-"))
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("STRIPE_PRICE_PRO_MONTHLY", "price_pro_monthly")
os.environ.setdefault("STRIPE_PRICE_PRO_ANNUAL", "price_pro_annual")
os.environ.setdefault("STRIPE_PRICE_ENTERPRISE_MONTHLY", "price_enterprise_monthly")
os.environ.setdefault("STRIPE_PRICE_ENTERPRISE_ANNUAL", "price_enterprise_annual")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import api_error, AUTH_REQUIRED
from app.core.permissions import AccessLevel, LEVEL_TO_ROLE
from app.db.base import Base
from app.db.session import get_db
from app.dependencies.auth import get_session_claims
from app.dependencies.stores import get_rate_limiter, get_verification_codes
from app.main import app
from app.services.ephemeral_store import InMemoryStore
from app.services.rate_limiter import RateLimiter
from app.services.verification_codes import VerificationCodeStore

# In-memory SQLite shared across connections for the duration of a test
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeClock:
    """Controllable time source for the ephemeral stores."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SignedInAs:
    """Claims returned by the overridden session dependency; None means signed out."""

    def __init__(self):
        self.claims = None

    def __call__(self, clerk_id: str, level: AccessLevel | None = None, **extra) -> dict:
        claims = {"sub": clerk_id, **extra}
        if level is not None:
            claims["public_metadata"] = {"role": LEVEL_TO_ROLE[level]}
        self.claims = claims
        return claims

    def sign_out(self) -> None:
        self.claims = None


@pytest.fixture
def db():
    """Fresh schema per test; yields one Session shared with the app under test."""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codes(clock):
    return VerificationCodeStore(InMemoryStore(clock=clock), ttl_seconds=600, max_attempts=5)


@pytest.fixture
def limiter(clock):
    return RateLimiter(InMemoryStore(clock=clock), max_attempts=10, window_seconds=3600)


@pytest.fixture
def sign_in():
    """sign_in("user_1") or sign_in("admin_1", AccessLevel.FULL) sets the caller's claims."""
    return SignedInAs()


@pytest.fixture
def uploads_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("UPLOADS_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def client(db, sign_in, codes, limiter, uploads_dir):
    """FastAPI TestClient fixture with test database, session and store overrides"""

    def override_get_db():
        yield db

    def override_get_session_claims():
        if sign_in.claims is None:
            raise api_error(401, AUTH_REQUIRED, "Authentication required")
        return sign_in.claims

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_claims] = override_get_session_claims
    app.dependency_overrides[get_verification_codes] = lambda: codes
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
