from fastapi import Header, Cookie, HTTPException, status, Depends
from sqlalchemy.orm import Session
import jwt  # PyJWT
import logging
import os
import requests
import time
from typing import Optional
from app.core.errors import api_error, AUTH_REQUIRED, NOT_FOUND
from app.db.session import get_db
from app.models.user import User

logger = logging.getLogger(__name__)

CLERK_JWKS_URL = os.getenv("CLERK_JWKS_URL", "")
CLERK_ISSUER = os.getenv("CLERK_ISSUER", "")
# Optional PEM public key: verifies session tokens without a JWKS round trip
CLERK_JWT_KEY = os.getenv("CLERK_JWT_KEY", "").replace("\\n", "\n")
CLERK_AUTHORIZED_PARTIES = [p.strip() for p in os.getenv("CLERK_AUTHORIZED_PARTIES", "").split(",") if p.strip()]

# Cache for JWKS (Public Keys)
JWKS_CACHE = None
JWKS_CACHE_TIMESTAMP = None
JWKS_CACHE_TTL = 3600  # Cache for 1 hour
JWKS_STALE_LIMIT = 86400  # Serve a stale key set for up to 24 hours if the provider is down


def get_jwks(jwks_url: str, force_refresh: bool = False):
    """
    Fetch the identity provider's JWKS with caching and retry logic.
    Only successful fetches are cached, so failures are retried on the next request.
    """
    global JWKS_CACHE, JWKS_CACHE_TIMESTAMP

    if JWKS_CACHE and not force_refresh and JWKS_CACHE_TIMESTAMP:
        if time.time() - JWKS_CACHE_TIMESTAMP < JWKS_CACHE_TTL:
            return JWKS_CACHE

    max_retries = 3
    last_error = None

    for attempt in range(max_retries):
        try:
            r = requests.get(jwks_url, timeout=10)
            r.raise_for_status()
            JWKS_CACHE = r.json()
            JWKS_CACHE_TIMESTAMP = time.time()
            logger.info("[AUTH] Fetched JWKS with %s keys", len(JWKS_CACHE.get("keys", [])))
            return JWKS_CACHE
        except (requests.exceptions.RequestException, ValueError) as e:
            last_error = str(e)
            logger.warning("[AUTH] JWKS fetch failed (attempt %s/%s): %s", attempt + 1, max_retries, last_error)
            if attempt < max_retries - 1:
                time.sleep(1)

    logger.error("[AUTH] Failed to fetch JWKS after %s attempts: %s", max_retries, last_error)
    # Stale cache beats locking every user out
    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP and time.time() - JWKS_CACHE_TIMESTAMP < JWKS_STALE_LIMIT:
        logger.warning("[AUTH] Using stale JWKS cache as fallback")
        return JWKS_CACHE
    return None


def _signing_key(kid: Optional[str]):
    if CLERK_JWT_KEY:
        return CLERK_JWT_KEY
    if not CLERK_JWKS_URL:
        logger.error("[AUTH] Neither CLERK_JWT_KEY nor CLERK_JWKS_URL is set")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: session verification key not set"
        )

    for force_refresh in (False, True):
        jwks = get_jwks(CLERK_JWKS_URL, force_refresh=force_refresh)
        if not jwks:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authentication service temporarily unavailable. Please try again in a moment."
            )
        for key in jwt.PyJWKSet.from_dict(jwks).keys:
            if key.key_id == kid:
                return key.key
        # Unknown kid: keys may have rotated, refetch once
    raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Invalid session token")


def verify_session_token(token: str) -> dict:
    """
    Verify a Clerk session JWT (RS256) and return its claims.
    Checks signature, exp/nbf, and issuer / authorized party when configured.
    """
    if not token or token.lower() in ("null", "undefined", "none") or len(token.split(".")) != 3:
        raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Invalid session token")

    try:
        header = jwt.get_unverified_header(token)
    except jwt.DecodeError:
        raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Invalid session token")

    if header.get("alg") != "RS256":
        logger.warning("[AUTH] Unsupported token algorithm: %s", header.get("alg"))
        raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Invalid session token")

    key = _signing_key(header.get("kid"))
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            issuer=CLERK_ISSUER or None,
            options={"verify_aud": False, "verify_iss": bool(CLERK_ISSUER)},
            leeway=5,
        )
    except jwt.ExpiredSignatureError:
        raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Session expired")
    except jwt.InvalidTokenError as e:
        logger.info("[AUTH] Session token rejected: %s", e)
        raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Invalid session token")

    azp = payload.get("azp")
    if CLERK_AUTHORIZED_PARTIES and azp and azp not in CLERK_AUTHORIZED_PARTIES:
        logger.warning("[AUTH] Token from unauthorized party %s", azp)
        raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Invalid session token")

    if not payload.get("sub"):
        raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Session token missing subject")
    return payload


def get_session_claims(
    authorization: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias="__session"),
) -> dict:
    """
    FastAPI dependency: verified session claims from `Authorization: Bearer <token>`
    or the `__session` cookie set by the frontend SDK.
    """
    token = None
    if authorization:
        if not authorization.startswith("Bearer "):
            raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Expected 'Bearer <token>'")
        token = authorization[len("Bearer "):].strip()
    elif session_cookie:
        token = session_cookie.strip()

    if not token:
        raise api_error(status.HTTP_401_UNAUTHORIZED, AUTH_REQUIRED, "Authentication required")
    return verify_session_token(token)


def get_current_clerk_id(claims: dict = Depends(get_session_claims)) -> str:
    return claims["sub"]


def get_current_account(
    clerk_id: str = Depends(get_current_clerk_id),
    db: Session = Depends(get_db),
) -> User:
    """The caller's Account row; 404 NOT_FOUND if the identity has not been synced yet."""
    user = db.query(User).filter(User.clerk_id == clerk_id).first()
    if not user:
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "Account not found")
    return user
