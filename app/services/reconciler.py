"""
Subscription reconciler.

Keeps Account rows consistent with the identity provider (Clerk) and the billing
provider (Stripe). Webhook routes and admin correction routes call into here; nothing
else writes the subscription/billing columns of `users`.

Each handler applies one event's field group inside one transaction, with the account
row locked (SELECT ... FOR UPDATE) where the database supports it.
"""
import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.plans import DEFAULT_PLAN_ID, plan_id_from_price_id
from app.models.admin import Admin
from app.models.upload import Upload
from app.models.user import User
from app.services import billing
from app.services.subscription_state import (
    InvalidTransition,
    SubscriptionEvent,
    SubscriptionState,
    TERMINAL_VENDOR_STATUSES,
    current_state,
    next_state,
    normalize_vendor_status,
)

logger = logging.getLogger(__name__)


class AccountNotFound(Exception):
    """No Account row exists for the given identity / billing reference."""


class IdentityConflict(Exception):
    """The email of an identity event already belongs to another Account."""


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_account(db: Session, clerk_id: str) -> User:
    """Read path: raises AccountNotFound, never returns None."""
    user = db.query(User).filter(User.clerk_id == clerk_id).first()
    if not user:
        raise AccountNotFound(clerk_id)
    return user


def is_admin(db: Session, clerk_id: str) -> bool:
    return db.query(Admin.id).filter(Admin.clerk_id == clerk_id).first() is not None


def _locked_by_clerk_id(db: Session, clerk_id: str) -> Optional[User]:
    return db.query(User).filter(User.clerk_id == clerk_id).with_for_update().first()


def _locked_by_customer(db: Session, customer_id: Optional[str]) -> Optional[User]:
    if not customer_id:
        return None
    return db.query(User).filter(User.stripe_customer_id == customer_id).with_for_update().first()


def _id_of(value) -> Optional[str]:
    """Stripe references arrive either as an id string or as an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


# ---------------------------------------------------------------------------
# Identity provider events
# ---------------------------------------------------------------------------

def upsert_identity(
    db: Session,
    clerk_id: str,
    email: str,
    name: Optional[str] = None,
    profile_picture_url: Optional[str] = None,
) -> User:
    """Create the Account on the free plan, or refresh its identity fields. Never touches billing columns."""
    email = email.strip().lower()
    user = _locked_by_clerk_id(db, clerk_id)
    created = user is None
    if created:
        user = User(
            clerk_id=clerk_id,
            email=email,
            name=name,
            profile_picture_url=profile_picture_url,
            subscription_plan_id=DEFAULT_PLAN_ID,
            subscription_status=SubscriptionState.ACTIVE.value,
        )
        db.add(user)
    else:
        user.email = email
        if name is not None:
            user.name = name
        if profile_picture_url is not None:
            user.profile_picture_url = profile_picture_url
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error("[reconciler] email for identity %s already used by another account", clerk_id)
        raise IdentityConflict(email) from e
    db.refresh(user)
    logger.info("[reconciler] %s account for identity %s", "created" if created else "updated", clerk_id)
    return user


def handle_identity_created(db: Session, clerk_id: str, email: Optional[str], name=None, image_url=None) -> User:
    if not clerk_id:
        raise ValueError("Identity event without an id")
    if not email:
        raise ValueError(f"Identity {clerk_id} has no primary email")
    return upsert_identity(db, clerk_id, email, name=name, profile_picture_url=image_url)


def handle_identity_updated(db: Session, clerk_id: str, email: Optional[str], name=None, image_url=None) -> Optional[User]:
    """Email/name/avatar only. Unknown identities are created, since 'created' may have been missed."""
    if not email:
        logger.warning("[reconciler] identity.updated for %s without email; ignored", clerk_id)
        return None
    return upsert_identity(db, clerk_id, email, name=name, profile_picture_url=image_url)


def handle_identity_deleted(db: Session, clerk_id: str) -> bool:
    user = db.query(User).filter(User.clerk_id == clerk_id).first()
    if not user:
        return False
    if is_admin(db, clerk_id):
        logger.warning("[reconciler] identity.deleted for admin %s; account kept", clerk_id)
        return False
    delete_account_records(db, user)
    return True


def delete_account_records(db: Session, user: User) -> None:
    """Remove the Account and rows owned by it in one transaction."""
    clerk_id = user.clerk_id
    db.query(Upload).filter(Upload.user_id == user.id).delete(synchronize_session=False)
    db.delete(user)
    db.commit()
    logger.info("[reconciler] deleted account %s", clerk_id)


# ---------------------------------------------------------------------------
# Billing provider events
# ---------------------------------------------------------------------------

def link_billing_customer(db: Session, clerk_id: str, customer_id: str) -> Optional[User]:
    user = _locked_by_clerk_id(db, clerk_id)
    if not user:
        db.rollback()
        logger.warning("[reconciler] cannot link customer %s: no account for %s", customer_id, clerk_id)
        return None
    if user.stripe_customer_id != customer_id:
        if user.stripe_customer_id:
            logger.warning(
                "[reconciler] account %s relinked from %s to %s", clerk_id, user.stripe_customer_id, customer_id
            )
        user.stripe_customer_id = customer_id
    db.commit()
    db.refresh(user)
    return user


def period_end_ms(subscription: dict) -> Optional[int]:
    """Period end in epoch ms; newer API versions only carry it per subscription item."""
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        period_end = items[0].get("current_period_end") if items else None
    return int(period_end) * 1000 if period_end else None


def subscription_fields(subscription: dict) -> dict:
    """Account field values carried by a billing subscription snapshot."""
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price_id = (first_item.get("price") or {}).get("id")
    metadata = subscription.get("metadata") or {}

    cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

    reported = normalize_vendor_status(subscription.get("status"))
    if cancel_at_period_end:
        # Paid through period end, then gone
        reported = SubscriptionState.CANCELED

    return {
        "plan_id": plan_id_from_price_id(price_id) or metadata.get("planId"),
        "subscription_id": subscription.get("id"),
        "current_period_end": period_end_ms(subscription),
        "auto_renew": not cancel_at_period_end,
        "reported_state": reported,
    }


def _account_for_subscription(db: Session, subscription: dict) -> Optional[User]:
    customer_id = _id_of(subscription.get("customer"))
    user = _locked_by_customer(db, customer_id)
    if user:
        return user
    # Late linking: the customer may have been created before the account was linked
    clerk_id = (subscription.get("metadata") or {}).get("clerkId")
    if clerk_id and customer_id:
        user = _locked_by_clerk_id(db, clerk_id)
        if user:
            logger.info("[reconciler] late-linking customer %s to %s", customer_id, clerk_id)
            user.stripe_customer_id = customer_id
    return user


def apply_subscription_snapshot(db: Session, subscription: dict, event: SubscriptionEvent) -> Optional[User]:
    """
    subscription-created / subscription-updated. Returns None when no account is linked.

    Snapshots for a subscription other than the one the account holds are stale unless
    they start a new subscription (created). A terminal vendor status ends the held
    subscription and is a no-op for anything else.
    """
    fields = subscription_fields(subscription)
    user = _account_for_subscription(db, subscription)
    if not user:
        db.rollback()
        logger.warning(
            "[reconciler] %s for unlinked customer %s; no-op", event.value, _id_of(subscription.get("customer"))
        )
        return None

    subscription_id = fields["subscription_id"]
    holds_this = bool(user.stripe_subscription_id) and user.stripe_subscription_id == subscription_id

    if subscription.get("status") in TERMINAL_VENDOR_STATUSES:
        if not holds_this:
            db.rollback()
            logger.info(
                "[reconciler] %s for ended subscription %s; %s holds %s, no-op",
                event.value, subscription_id, user.clerk_id, user.stripe_subscription_id,
            )
            return user
        return _reset_to_free(db, user)

    if (
        event is SubscriptionEvent.SUBSCRIPTION_UPDATED
        and user.stripe_subscription_id
        and not holds_this
    ):
        db.rollback()
        logger.info(
            "[reconciler] stale %s for %s ignored; %s holds %s",
            event.value, subscription_id, user.clerk_id, user.stripe_subscription_id,
        )
        return user

    try:
        new_state = next_state(current_state(user), event, fields["reported_state"])
    except InvalidTransition:
        db.rollback()
        raise

    if fields["plan_id"]:
        user.subscription_plan_id = fields["plan_id"]
    user.subscription_status = new_state.value
    user.stripe_subscription_id = subscription_id
    user.current_period_end = fields["current_period_end"]
    user.auto_renew = fields["auto_renew"]
    db.commit()
    db.refresh(user)
    logger.info(
        "[reconciler] %s %s -> plan=%s status=%s",
        event.value, user.clerk_id, user.subscription_plan_id, user.subscription_status,
    )
    return user


def _reset_to_free(db: Session, user: User) -> User:
    next_state(current_state(user), SubscriptionEvent.SUBSCRIPTION_DELETED)
    user.subscription_plan_id = DEFAULT_PLAN_ID
    user.subscription_status = SubscriptionState.CANCELED.value
    user.stripe_subscription_id = None
    user.current_period_end = None
    user.auto_renew = False
    db.commit()
    db.refresh(user)
    logger.info("[reconciler] %s downgraded to free", user.clerk_id)
    return user


def apply_subscription_deleted(db: Session, subscription: dict) -> Optional[User]:
    """Back to the free baseline; billing customer id is kept for future checkouts."""
    user = _account_for_subscription(db, subscription)
    if not user:
        db.rollback()
        logger.warning("[reconciler] subscription_deleted for unlinked customer; no-op")
        return None

    subscription_id = subscription.get("id")
    if user.stripe_subscription_id and subscription_id and user.stripe_subscription_id != subscription_id:
        db.rollback()
        logger.info(
            "[reconciler] ignoring deletion of %s; %s holds %s",
            subscription_id, user.clerk_id, user.stripe_subscription_id,
        )
        return user

    return _reset_to_free(db, user)


def invoice_subscription_id(invoice: dict) -> Optional[str]:
    subscription_id = _id_of(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _id_of(details.get("subscription"))


def apply_payment_event(
    db: Session,
    invoice: dict,
    event: SubscriptionEvent,
    fetch_subscription: Callable[[str], dict] = None,
) -> Optional[User]:
    """invoice.payment_succeeded / invoice.payment_failed for subscription invoices."""
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        logger.info("[reconciler] invoice %s is not for a subscription; ignored", invoice.get("id"))
        return None

    fresh = None
    if event is SubscriptionEvent.PAYMENT_SUCCEEDED:
        fetch = fetch_subscription or billing.retrieve_subscription
        fresh = fetch(subscription_id)

    user = _locked_by_customer(db, _id_of(invoice.get("customer")))
    if not user:
        db.rollback()
        logger.warning("[reconciler] %s for unlinked customer %s; no-op", event.value, invoice.get("customer"))
        return None
    if user.stripe_subscription_id != subscription_id:
        # FREE accounts included: the subscription has ended or its "created" snapshot will carry the state
        db.rollback()
        logger.info(
            "[reconciler] %s for %s ignored; %s holds %s",
            event.value, subscription_id, user.clerk_id, user.stripe_subscription_id,
        )
        return user

    try:
        new_state = next_state(current_state(user), event)
    except InvalidTransition:
        db.rollback()
        raise

    user.subscription_status = new_state.value
    if fresh:
        user.current_period_end = period_end_ms(fresh) or user.current_period_end
        user.auto_renew = not bool(fresh.get("cancel_at_period_end"))
    db.commit()
    db.refresh(user)
    logger.info("[reconciler] %s %s -> %s", event.value, user.clerk_id, user.subscription_status)
    return user


# ---------------------------------------------------------------------------
# Admin-triggered paths
# ---------------------------------------------------------------------------

def set_auto_renew(db: Session, subscription_id: str, auto_renew: bool) -> dict:
    """
    Flip auto-renew for a billing subscription and mirror it onto the account.
    The subscription is re-fetched first so vendor-side changes are not overwritten.
    """
    current = billing.retrieve_subscription(subscription_id)
    customer_id = _id_of(current.get("customer"))

    user = _locked_by_customer(db, customer_id)
    if not user:
        user = db.query(User).filter(User.stripe_subscription_id == subscription_id).with_for_update().first()
    if not user:
        db.rollback()
        raise AccountNotFound(subscription_id)

    event = SubscriptionEvent.AUTO_RENEW_ENABLED if auto_renew else SubscriptionEvent.AUTO_RENEW_DISABLED
    try:
        new_state = next_state(current_state(user), event)
    except InvalidTransition:
        db.rollback()
        raise

    cancel_at_period_end = not auto_renew
    if bool(current.get("cancel_at_period_end")) != cancel_at_period_end:
        updated = billing.set_cancel_at_period_end(subscription_id, cancel_at_period_end)
    else:
        updated = current

    period_end = period_end_ms(updated)
    user.subscription_status = new_state.value
    user.auto_renew = auto_renew
    if period_end:
        user.current_period_end = period_end
    db.commit()
    db.refresh(user)
    logger.info("[reconciler] auto-renew %s for %s -> %s", "on" if auto_renew else "off", user.clerk_id, new_state.value)
    return {
        "subscription_id": subscription_id,
        "auto_renew": user.auto_renew,
        "status": user.subscription_status,
        "cancel_at_period_end": bool(updated.get("cancel_at_period_end")),
        "current_period_end": user.current_period_end,
    }


def resync_from_billing(db: Session, clerk_id: str) -> User:
    """Admin correction: pull the account's subscription from the billing provider and apply it."""
    user = get_account(db, clerk_id)
    if not user.stripe_subscription_id:
        return user
    subscription = billing.retrieve_subscription(user.stripe_subscription_id)
    return apply_subscription_snapshot(db, subscription, SubscriptionEvent.SUBSCRIPTION_UPDATED)
