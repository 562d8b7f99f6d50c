"""
Admin access gate.

Access level resolution is two-stage and the result says which stage answered:
  FromClaims  - role found in the verified session claims (fast path)
  FromStore   - claims had no admin role, the admins table did (claims lag the store)
  Unresolved  - neither; the caller is not an admin
The page decision itself is app.core.permissions.can_access_page.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Depends, status
from sqlalchemy.orm import Session

from app.core.errors import api_error, PERMISSION_DENIED
from app.core.permissions import (
    AccessLevel,
    NO_ACCESS_MESSAGE,
    can_access_page,
    get_unauthorized_message,
    has_full_access,
    parse_access_level,
)
from app.db.session import get_db
from app.dependencies.auth import get_session_claims
from app.models.admin import Admin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FromClaims:
    level: AccessLevel
    source: str = "claims"


@dataclass(frozen=True)
class FromStore:
    level: AccessLevel
    source: str = "store"


@dataclass(frozen=True)
class Unresolved:
    level: None = None
    source: str = "unresolved"


AccessResolution = Union[FromClaims, FromStore, Unresolved]


@dataclass(frozen=True)
class AdminContext:
    clerk_id: str
    resolution: AccessResolution

    @property
    def level(self) -> Optional[AccessLevel]:
        return self.resolution.level


def level_from_claims(claims: dict) -> Optional[AccessLevel]:
    """
    Highest admin level named by the role in public metadata. The role may be a
    single string or a list; claim key spelling depends on the session token template.
    """
    roles = None
    for key in ("public_metadata", "publicMetadata", "metadata"):
        metadata = claims.get(key)
        if isinstance(metadata, dict) and metadata.get("role"):
            roles = metadata["role"]
            break
    if roles is None:
        return None
    if isinstance(roles, str):
        roles = [roles]

    levels = [parse_access_level(role) for role in roles if isinstance(role, str)]
    levels = [level for level in levels if level is not None]
    if not levels:
        return None
    return max(levels, key=lambda level: level.rank)


def level_from_store(db: Session, clerk_id: str) -> Optional[AccessLevel]:
    admin = db.query(Admin).filter(Admin.clerk_id == clerk_id).first()
    if not admin:
        return None
    level = parse_access_level(admin.access_level)
    if level is None:
        logger.error("[access] admin %s has unknown access level %r", clerk_id, admin.access_level)
    return level


def resolve_access_level(claims: dict, db: Session) -> AccessResolution:
    level = level_from_claims(claims)
    if level is not None:
        return FromClaims(level)

    clerk_id = claims.get("sub")
    if clerk_id:
        level = level_from_store(db, clerk_id)
        if level is not None:
            logger.info("[access] %s resolved from admin store (claims lag): %s", clerk_id, level.value)
            return FromStore(level)
    return Unresolved()


def get_admin_context(
    claims: dict = Depends(get_session_claims),
    db: Session = Depends(get_db),
) -> AdminContext:
    """Authenticated caller plus resolution; does not decide anything by itself."""
    return AdminContext(clerk_id=claims["sub"], resolution=resolve_access_level(claims, db))


def require_admin(context: AdminContext = Depends(get_admin_context)) -> AdminContext:
    if context.level is None:
        raise api_error(status.HTTP_403_FORBIDDEN, PERMISSION_DENIED, NO_ACCESS_MESSAGE)
    return context


def require_page(page: str):
    """Dependency factory: the caller's level must open `page` in the permission matrix."""

    def dependency(context: AdminContext = Depends(get_admin_context)) -> AdminContext:
        if not can_access_page(context.level, page):
            logger.info(
                "[access] %s denied %s (level=%s, source=%s)",
                context.clerk_id, page, context.level.value if context.level else None, context.resolution.source,
            )
            raise api_error(
                status.HTTP_403_FORBIDDEN,
                PERMISSION_DENIED,
                get_unauthorized_message(context.level, page),
            )
        return context

    return dependency


def require_full_access(context: AdminContext = Depends(get_admin_context)) -> AdminContext:
    if not has_full_access(context.level):
        level = context.level.value if context.level else None
        message = (
            NO_ACCESS_MESSAGE if level is None
            else f"Your {level} level does not have permission to perform this action. Full Access is required."
        )
        raise api_error(status.HTTP_403_FORBIDDEN, PERMISSION_DENIED, message)
    return context
