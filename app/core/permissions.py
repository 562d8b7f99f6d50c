"""
Admin permission matrix.
Static mapping of admin access level -> admin pages that level may open.
"""
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional


class AccessLevel(str, Enum):
    LIMITED = "Limited Access"
    PARTIAL = "Partial Access"
    FULL = "Full Access"

    @property
    def rank(self) -> int:
        return ACCESS_LEVEL_ORDER.index(self)


# Lowest privilege first. Every page allowed for a level is allowed for all higher levels.
ACCESS_LEVEL_ORDER: List[AccessLevel] = [
    AccessLevel.LIMITED,
    AccessLevel.PARTIAL,
    AccessLevel.FULL,
]

PAGE_PERMISSIONS: Dict[str, FrozenSet[AccessLevel]] = {
    "/admin": frozenset({AccessLevel.FULL, AccessLevel.PARTIAL, AccessLevel.LIMITED}),
    "/admin/users": frozenset({AccessLevel.FULL, AccessLevel.PARTIAL, AccessLevel.LIMITED}),
    "/admin/subscriptions": frozenset({AccessLevel.FULL, AccessLevel.PARTIAL}),
    "/admin/analytics": frozenset({AccessLevel.FULL, AccessLevel.PARTIAL, AccessLevel.LIMITED}),
    "/admin/administrators": frozenset({AccessLevel.FULL}),
    "/admin/settings": frozenset({AccessLevel.FULL, AccessLevel.PARTIAL}),
}

# Session-claim role names <-> stored access levels
ROLE_TO_LEVEL: Dict[str, AccessLevel] = {
    "admin-full": AccessLevel.FULL,
    "admin-partial": AccessLevel.PARTIAL,
    "admin-limited": AccessLevel.LIMITED,
}
LEVEL_TO_ROLE: Dict[AccessLevel, str] = {level: role for role, level in ROLE_TO_LEVEL.items()}

NO_ACCESS_MESSAGE = "You do not have admin access to view this page."


def parse_access_level(value) -> Optional[AccessLevel]:
    """Accept an AccessLevel, its stored label, or a claim role name. Anything else is None."""
    if isinstance(value, AccessLevel):
        return value
    if not isinstance(value, str):
        return None
    if value in ROLE_TO_LEVEL:
        return ROLE_TO_LEVEL[value]
    try:
        return AccessLevel(value)
    except ValueError:
        return None


def can_access_page(level: Optional[AccessLevel], page: str) -> bool:
    """True only when `level` is a known level listed for a known page."""
    if level is None:
        return False
    allowed = PAGE_PERMISSIONS.get(page)
    if not allowed:
        return False
    return level in allowed


def get_accessible_pages(level: Optional[AccessLevel]) -> List[str]:
    return [page for page in PAGE_PERMISSIONS if can_access_page(level, page)]


def has_full_access(level: Optional[AccessLevel]) -> bool:
    return level == AccessLevel.FULL


def has_partial_access_or_higher(level: Optional[AccessLevel]) -> bool:
    return level is not None and level.rank >= AccessLevel.PARTIAL.rank


def minimum_required_level(page: str) -> Optional[AccessLevel]:
    """Lowest level (by ACCESS_LEVEL_ORDER) that may open `page`; None for unknown pages."""
    allowed = PAGE_PERMISSIONS.get(page)
    if not allowed:
        return None
    return min(allowed, key=lambda level: level.rank)


def get_unauthorized_message(level: Optional[AccessLevel], page: str) -> str:
    if level is None:
        return NO_ACCESS_MESSAGE
    required = minimum_required_level(page)
    if required is None:
        return f"Your {level.value} level does not have permission to access this page."
    return (
        f"Your {level.value} level does not have permission to access this page. "
        f"{required.value} is required."
    )


def filter_nav_items_by_access(items: Iterable[dict], level: Optional[AccessLevel]) -> List[dict]:
    """Keep navigation entries (dicts with an `href`) the level can open."""
    return [item for item in items if can_access_page(level, item.get("href", ""))]
