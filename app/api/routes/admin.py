"""
Admin API. Every route is gated by the access gate before it touches anything:
page routes through require_page(<admin page>), destructive routes through
require_full_access.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.errors import api_error, CONFLICT, NOT_FOUND, PERMISSION_DENIED, UPSTREAM_ERROR, VALIDATION_ERROR
from app.core.permissions import (
    AccessLevel,
    LEVEL_TO_ROLE,
    can_access_page,
    get_accessible_pages,
    get_unauthorized_message,
)
from app.core.plans import get_plan, monthly_amount
from app.db.session import get_db
from app.dependencies.access_gate import (
    AdminContext,
    get_admin_context,
    require_admin,
    require_full_access,
    require_page,
)
from app.models.admin import Admin
from app.models.user import User
from app.schemas.admin import (
    AccessCheckResponse,
    AccessResponse,
    AdminCreate,
    AdminLevelUpdate,
    AdminResponse,
    DeleteUserRequest,
    ToggleAutoRenewRequest,
    ToggleAutoRenewResponse,
)
from app.services import billing, identity, reconciler
from app.services.account_deletion import AccountDeletionFailed, delete_account
from app.services.identity import IdentityProviderError
from app.services.reconciler import AccountNotFound
from app.services.subscription_state import InvalidTransition

logger = logging.getLogger(__name__)

router = APIRouter()

SORT_KEYS = {
    "name": lambda row: (row["name"] or "").lower(),
    "email": lambda row: row["email"].lower(),
    "subscription": lambda row: (row["plan_name"] or "").lower(),
    "date": lambda row: row["current_period_end"] or 0,
    "amount": lambda row: row["monthly_amount"],
}


def _admin_dict(admin: Admin) -> dict:
    return {
        "clerk_id": admin.clerk_id,
        "email": admin.email,
        "name": admin.name,
        "access_level": admin.access_level,
        "became_admin_at": admin.became_admin_at.isoformat() if admin.became_admin_at else None,
    }


def _push_role(clerk_id: str, level: Optional[AccessLevel]) -> bool:
    """Mirror the admin level into session claims. The admins table stays authoritative."""
    try:
        identity.set_role(clerk_id, LEVEL_TO_ROLE[level] if level else None)
        return True
    except IdentityProviderError as e:
        logger.warning("[admin] role sync for %s failed (store fallback still applies): %s", clerk_id, e)
        return False


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------

@router.get("/access", response_model=AccessResponse)
def get_access(context: AdminContext = Depends(require_admin)):
    """Caller's level, which resolution stage produced it, and the pages it opens."""
    return {
        "level": context.level.value,
        "source": context.resolution.source,
        "pages": get_accessible_pages(context.level),
    }


@router.get("/access/check", response_model=AccessCheckResponse)
def check_access(page: str = Query(...), context: AdminContext = Depends(get_admin_context)):
    allowed = can_access_page(context.level, page)
    return {
        "page": page,
        "allowed": allowed,
        "message": None if allowed else get_unauthorized_message(context.level, page),
    }


# ---------------------------------------------------------------------------
# Users & subscriptions
# ---------------------------------------------------------------------------

@router.get("/users")
def list_users(
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_page("/admin/users")),
):
    admin_ids = {clerk_id for (clerk_id,) in db.query(Admin.clerk_id).all()}
    users = db.query(User).order_by(User.created_at.desc(), User.id.desc()).all()
    return [
        {
            "clerk_id": user.clerk_id,
            "email": user.email,
            "name": user.name,
            "subscription_plan_id": user.subscription_plan_id,
            "subscription_status": user.subscription_status,
            "is_admin": user.clerk_id in admin_ids,
            "created_at": user.created_at.isoformat() if user.created_at else None,
        }
        for user in users
    ]


@router.get("/subscriptions")
def list_subscriptions(
    plan: Optional[str] = Query(None),
    sort_by: str = Query("name"),
    order: str = Query("asc"),
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_page("/admin/subscriptions")),
):
    """Paid accounts plus revenue figures. MRR counts active and trialing subscriptions only."""
    query = db.query(User).filter(User.subscription_plan_id != "free")
    if plan and plan != "all":
        query = query.filter(User.subscription_plan_id == plan)

    rows = []
    for user in query.all():
        plan_info = get_plan(user.subscription_plan_id)
        rows.append({
            "clerk_id": user.clerk_id,
            "name": user.name,
            "email": user.email,
            "plan_id": user.subscription_plan_id,
            "plan_name": plan_info["name"] if plan_info else user.subscription_plan_id,
            "status": user.subscription_status,
            "current_period_end": user.current_period_end,
            "auto_renew": bool(user.auto_renew),
            "monthly_amount": monthly_amount(user.subscription_plan_id),
            "stripe_subscription_id": user.stripe_subscription_id,
            "stripe_customer_id": user.stripe_customer_id,
        })

    rows.sort(key=SORT_KEYS.get(sort_by, SORT_KEYS["name"]), reverse=(order == "desc"))
    total_mrr = sum(r["monthly_amount"] for r in rows if r["status"] in ("active", "trialing"))
    return {
        "subscriptions": rows,
        "analytics": {
            "total_paying_users": len(rows),
            "total_mrr": total_mrr,
            "expected_arr": total_mrr * 12,
        },
    }


@router.post("/toggle-auto-renew", response_model=ToggleAutoRenewResponse)
def toggle_auto_renew(
    request: ToggleAutoRenewRequest,
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_page("/admin/subscriptions")),
):
    try:
        result = reconciler.set_auto_renew(db, request.subscription_id, request.auto_renew)
    except AccountNotFound:
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "No account is linked to this subscription")
    except InvalidTransition as e:
        raise api_error(status.HTTP_409_CONFLICT, CONFLICT, str(e))
    except billing.BillingError:
        raise api_error(status.HTTP_502_BAD_GATEWAY, UPSTREAM_ERROR, "Failed to update subscription")
    logger.info("[admin] %s set auto-renew=%s on %s", context.clerk_id, request.auto_renew, request.subscription_id)
    return result


@router.post("/subscriptions/{clerk_id}/resync")
def resync_subscription(
    clerk_id: str,
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_page("/admin/subscriptions")),
):
    """Correction path: reapply the billing provider's current view of the subscription."""
    try:
        user = reconciler.resync_from_billing(db, clerk_id)
    except AccountNotFound:
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "Account not found")
    except InvalidTransition as e:
        raise api_error(status.HTTP_409_CONFLICT, CONFLICT, str(e))
    except billing.BillingError:
        raise api_error(status.HTTP_502_BAD_GATEWAY, UPSTREAM_ERROR, "Failed to load subscription")
    logger.info("[admin] %s resynced subscription for %s", context.clerk_id, clerk_id)
    return {
        "clerk_id": user.clerk_id,
        "subscription_plan_id": user.subscription_plan_id,
        "subscription_status": user.subscription_status,
        "current_period_end": user.current_period_end,
        "auto_renew": user.auto_renew,
    }


@router.post("/delete-user")
def delete_user(
    request: DeleteUserRequest,
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_full_access),
):
    """
    Administrator-mediated deletion. 200 on full success, 207 when non-critical
    cleanup failed, 500 when the account rows or identity could not be removed.
    """
    if request.clerk_id == context.clerk_id:
        raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, "You cannot delete your own account")
    if reconciler.is_admin(db, request.clerk_id):
        raise api_error(
            status.HTTP_403_FORBIDDEN,
            PERMISSION_DENIED,
            "Admin accounts must have their admin access removed before deletion",
        )
    try:
        user = reconciler.get_account(db, request.clerk_id)
    except AccountNotFound:
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "User not found")

    try:
        result = delete_account(db, user)
    except AccountDeletionFailed as e:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "failed_step": e.step, "cleanup": e.result.as_dict()},
        )

    logger.info("[admin] %s deleted user %s", context.clerk_id, request.clerk_id)
    return JSONResponse(
        status_code=status.HTTP_207_MULTI_STATUS if result.partial else status.HTTP_200_OK,
        content={"success": True, "partial": result.partial, "cleanup": result.as_dict()},
    )


# ---------------------------------------------------------------------------
# Administrators
# ---------------------------------------------------------------------------

@router.get("/administrators", response_model=List[AdminResponse])
def list_administrators(
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_page("/admin/administrators")),
):
    admins = db.query(Admin).order_by(Admin.became_admin_at.desc(), Admin.id.desc()).all()
    return [_admin_dict(admin) for admin in admins]


@router.post("/administrators", status_code=status.HTTP_201_CREATED)
def create_administrator(
    request: AdminCreate,
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_full_access),
):
    try:
        user = reconciler.get_account(db, request.clerk_id)
    except AccountNotFound:
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "User not found")
    if reconciler.is_admin(db, request.clerk_id):
        raise api_error(status.HTTP_409_CONFLICT, CONFLICT, "Admin already exists")

    admin = Admin(
        clerk_id=user.clerk_id,
        user_id=user.id,
        email=user.email,
        name=user.name,
        access_level=request.access_level.value,
        account_created_at=user.created_at,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    role_synced = _push_role(admin.clerk_id, request.access_level)
    logger.info("[admin] %s granted %s to %s", context.clerk_id, admin.access_level, admin.clerk_id)
    return {**_admin_dict(admin), "role_synced": role_synced}


@router.patch("/administrators/{clerk_id}")
def update_administrator(
    clerk_id: str,
    request: AdminLevelUpdate,
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_full_access),
):
    if clerk_id == context.clerk_id:
        raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, "Cannot modify your own access level")
    admin = db.query(Admin).filter(Admin.clerk_id == clerk_id).first()
    if not admin:
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "Admin not found")
    if admin.access_level == AccessLevel.FULL.value and request.access_level != AccessLevel.FULL:
        _ensure_not_last_full_admin(db)

    admin.access_level = request.access_level.value
    db.commit()
    db.refresh(admin)
    role_synced = _push_role(clerk_id, request.access_level)
    return {**_admin_dict(admin), "role_synced": role_synced}


@router.delete("/administrators/{clerk_id}")
def delete_administrator(
    clerk_id: str,
    db: Session = Depends(get_db),
    context: AdminContext = Depends(require_full_access),
):
    if clerk_id == context.clerk_id:
        raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, "Cannot remove your own admin access")
    admin = db.query(Admin).filter(Admin.clerk_id == clerk_id).first()
    if not admin:
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "Admin not found")
    if admin.access_level == AccessLevel.FULL.value:
        _ensure_not_last_full_admin(db)

    db.delete(admin)
    db.commit()
    role_synced = _push_role(clerk_id, None)
    logger.info("[admin] %s removed admin access from %s", context.clerk_id, clerk_id)
    return {"success": True, "role_synced": role_synced}


def _ensure_not_last_full_admin(db: Session) -> None:
    remaining = db.query(Admin).filter(Admin.access_level == AccessLevel.FULL.value).count()
    if remaining <= 1:
        raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, "Cannot remove the last Full Access administrator")
