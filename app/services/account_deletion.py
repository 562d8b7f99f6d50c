"""
Account deletion shared by self-service deletion and the admin delete-user path.

Order:
  1. cancel billing subscription      (non-critical: log and continue)
  2. delete billing customer          (non-critical)
  3. remove stored files              (non-critical)
  4. delete account rows              (critical: abort and report)
  5. delete identity-provider user    (critical: report)
Admin guards run before step 1 so a refused deletion performs no mutation at all.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.user import User
from app.services import billing, identity, reconciler, storage

logger = logging.getLogger(__name__)

ADMIN_SELF_DELETE_MESSAGE = "Admin accounts cannot be deleted through this method. Please contact support."


class AdminAccountProtected(Exception):
    """Deleting this account must go through the administrator-mediated path."""


class AccountDeletionFailed(Exception):
    def __init__(self, step: str, result: "DeletionResult"):
        super().__init__(f"Account deletion failed at {step}")
        self.step = step
        self.result = result


@dataclass
class DeletionResult:
    clerk_id: str
    steps: Dict[str, Optional[bool]] = field(default_factory=lambda: {
        "subscription_canceled": None,
        "customer_deleted": None,
        "files_removed": None,
        "account_deleted": False,
        "identity_deleted": False,
    })
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return any(value is False for value in self.steps.values())

    def as_dict(self) -> dict:
        return {"clerk_id": self.clerk_id, "steps": dict(self.steps), "errors": dict(self.errors)}


def _non_critical(result: DeletionResult, step: str, fn, *args) -> None:
    try:
        fn(*args)
        result.steps[step] = True
    except (billing.BillingError, storage.StorageError) as e:
        result.steps[step] = False
        result.errors[step] = str(e)
        logger.warning("[account deletion] %s failed for %s: %s", step, result.clerk_id, e)


def delete_account(db: Session, user: User) -> DeletionResult:
    """Run the deletion sequence for `user`. Caller is responsible for the admin guards."""
    result = DeletionResult(clerk_id=user.clerk_id)

    if user.stripe_subscription_id and user.subscription_status != "canceled":
        _non_critical(result, "subscription_canceled", billing.cancel_subscription, user.stripe_subscription_id)
    if user.stripe_customer_id:
        _non_critical(result, "customer_deleted", billing.delete_customer, user.stripe_customer_id)
    _non_critical(result, "files_removed", storage.delete_owner_files, user.clerk_id)

    try:
        reconciler.delete_account_records(db, user)
        result.steps["account_deleted"] = True
    except SQLAlchemyError as e:
        db.rollback()
        result.errors["account_deleted"] = "database error"
        logger.exception("[account deletion] could not delete account %s: %s", user.clerk_id, e)
        raise AccountDeletionFailed("account_deleted", result) from e

    try:
        identity.delete_user(result.clerk_id)
        result.steps["identity_deleted"] = True
    except identity.IdentityProviderError as e:
        if e.status_code == 404:
            result.steps["identity_deleted"] = True
        else:
            result.errors["identity_deleted"] = str(e)
            logger.error("[account deletion] identity user %s not deleted: %s", result.clerk_id, e)
            raise AccountDeletionFailed("identity_deleted", result) from e

    logger.info("[account deletion] %s deleted (partial=%s)", result.clerk_id, result.partial)
    return result


def delete_own_account(db: Session, user: User) -> DeletionResult:
    """Self-service path: admins are refused before anything is touched."""
    if reconciler.is_admin(db, user.clerk_id):
        logger.warning("[account deletion] admin %s attempted self-deletion", user.clerk_id)
        raise AdminAccountProtected(ADMIN_SELF_DELETE_MESSAGE)
    return delete_account(db, user)
