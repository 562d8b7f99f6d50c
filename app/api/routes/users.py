import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from app.core.errors import api_error, NOT_FOUND, UPSTREAM_ERROR, ADMIN_SELF_DELETE, VALIDATION_ERROR, CONFLICT
from app.core.plans import get_plan, has_active_access, subscription_status_text
from app.db.session import get_db
from app.dependencies.auth import get_current_account, get_current_clerk_id
from app.models.user import User
from app.schemas.users import UserResponse, ProfileUpdate, SubscriptionResponse
from app.services import identity, reconciler
from app.services.account_deletion import AccountDeletionFailed, AdminAccountProtected, delete_own_account
from app.services.identity import IdentityProviderError
from app.services.reconciler import AccountNotFound, IdentityConflict

logger = logging.getLogger(__name__)

router = APIRouter()


def _user_response(db: Session, user: User) -> dict:
    return {
        "id": user.id,
        "clerk_id": user.clerk_id,
        "email": user.email,
        "name": user.name,
        "profile_picture_url": user.profile_picture_url,
        "subscription_plan_id": user.subscription_plan_id,
        "subscription_status": user.subscription_status,
        "current_period_end": user.current_period_end,
        "auto_renew": user.auto_renew,
        "is_admin": reconciler.is_admin(db, user.clerk_id),
    }


@router.get("/me", response_model=UserResponse)
def get_current_user(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_account)
):
    """Get current user profile"""
    return _user_response(db, user)


@router.post("/me/sync", response_model=UserResponse)
def sync_current_user(
    db: Session = Depends(get_db),
    clerk_id: str = Depends(get_current_clerk_id)
):
    """
    Make sure the signed-in identity has an Account row.
    Covers sign-ups whose user.created webhook has not arrived yet.
    """
    user = db.query(User).filter(User.clerk_id == clerk_id).first()
    if user:
        return _user_response(db, user)

    try:
        clerk_user = identity.get_user(clerk_id)
    except IdentityProviderError:
        raise api_error(status.HTTP_502_BAD_GATEWAY, UPSTREAM_ERROR, "Could not load your account details")

    email = identity.primary_email(clerk_user)
    if not email:
        raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, "Your account has no email address")
    try:
        user = reconciler.upsert_identity(
            db,
            clerk_id,
            email,
            name=identity.display_name(clerk_user),
            profile_picture_url=clerk_user.get("image_url"),
        )
    except IdentityConflict:
        raise api_error(status.HTTP_409_CONFLICT, CONFLICT, "Email already belongs to another account")
    logger.info("[users] lazily synced %s", clerk_id)
    return _user_response(db, user)


@router.put("/me", response_model=UserResponse)
def update_user_profile(
    user_data: ProfileUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_account)
):
    """Update profile fields; the name is mirrored to the identity provider."""
    if user_data.name is not None:
        name = user_data.name.strip()
        if not name:
            raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, "Name cannot be empty")
        first_name, last_name = identity.split_name(name)
        try:
            identity.update_name(user.clerk_id, first_name, last_name)
        except IdentityProviderError:
            raise api_error(status.HTTP_502_BAD_GATEWAY, UPSTREAM_ERROR, "Failed to update profile")
        user.name = name

    if user_data.profile_picture_url is not None:
        user.profile_picture_url = user_data.profile_picture_url or None

    db.commit()
    db.refresh(user)
    return _user_response(db, user)


@router.get("/me/subscription", response_model=SubscriptionResponse)
def get_subscription(
    db: Session = Depends(get_db),
    clerk_id: str = Depends(get_current_clerk_id)
):
    """
    404 when there is no Account at all; an Account without a billing link is a
    normal 200 with null billing fields.
    """
    try:
        user = reconciler.get_account(db, clerk_id)
    except AccountNotFound:
        raise api_error(status.HTTP_404_NOT_FOUND, NOT_FOUND, "Account not found")

    plan = get_plan(user.subscription_plan_id)
    return {
        "plan_id": user.subscription_plan_id,
        "plan_name": plan["name"] if plan else None,
        "status": user.subscription_status,
        "status_text": subscription_status_text(user.subscription_status, user.current_period_end, user.auto_renew),
        "has_active_access": has_active_access(user.subscription_status, user.current_period_end),
        "stripe_customer_id": user.stripe_customer_id,
        "stripe_subscription_id": user.stripe_subscription_id,
        "current_period_end": user.current_period_end,
        "auto_renew": user.auto_renew,
    }


@router.delete("/me")
def delete_user_account(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_account)
):
    """Delete the caller's account everywhere. Admin accounts are refused untouched."""
    try:
        result = delete_own_account(db, user)
    except AdminAccountProtected as e:
        raise api_error(status.HTTP_403_FORBIDDEN, ADMIN_SELF_DELETE, str(e))
    except AccountDeletionFailed:
        raise api_error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            UPSTREAM_ERROR,
            "Failed to delete account. Please try again or contact support.",
        )
    return {"success": True, "cleanup": result.as_dict()}
