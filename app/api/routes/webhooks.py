"""
Webhooks from the identity provider (Clerk, delivered through Svix) and the
billing provider (Stripe). Signatures are verified before the payload is trusted;
all state changes go through app.services.reconciler.
"""
import os
import json
import hmac
import hashlib
import base64
import logging
import time
from fastapi import APIRouter, Request, HTTPException, status, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.services import billing, reconciler
from app.services.identity import primary_email, display_name
from app.services.reconciler import IdentityConflict
from app.services.subscription_state import InvalidTransition, SubscriptionEvent

logger = logging.getLogger(__name__)

router = APIRouter()

CLERK_WEBHOOK_SECRET = os.getenv("CLERK_WEBHOOK_SECRET", "")
WEBHOOK_TOLERANCE_SECONDS = 5 * 60


def _verify_clerk_signature(
    payload: bytes,
    signature_header: str | None,
    webhook_id: str | None,
    webhook_timestamp: str | None,
    now: float | None = None,
) -> bool:
    """
    Verify a Svix (Standard Webhooks) signature.

    Signed payload format:
        f"{svix_id}.{svix_timestamp}.{raw_body}"

    HMAC-SHA256 keyed with the base64-decoded part of the `whsec_` secret, base64
    encoded. The `svix-signature` header holds one or more space-separated
    "v1,<signature>" entries (several during secret rotation).
    """
    if (
        not CLERK_WEBHOOK_SECRET
        or not signature_header
        or not webhook_id
        or not webhook_timestamp
    ):
        return False

    try:
        sent_at = int(webhook_timestamp)
    except ValueError:
        return False
    now = time.time() if now is None else now
    if abs(now - sent_at) > WEBHOOK_TOLERANCE_SECONDS:
        return False

    secret = CLERK_WEBHOOK_SECRET
    try:
        if secret.startswith("whsec_"):
            key_bytes = base64.b64decode(secret.split("_", 1)[1])
        else:
            key_bytes = secret.encode()
    except (ValueError, TypeError):
        return False

    signed_payload = f"{webhook_id}.{webhook_timestamp}.{payload.decode()}".encode()
    expected = base64.b64encode(hmac.new(key_bytes, signed_payload, hashlib.sha256).digest()).decode()

    for entry in signature_header.split():
        version, _, signature = entry.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            return True
    return False


@router.post("/clerk")
async def clerk_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Identity events. Register https://your-backend.com/webhooks/clerk in the Clerk
    dashboard for user.created, user.updated and user.deleted.
    """
    payload = await request.body()
    if not _verify_clerk_signature(
        payload,
        request.headers.get("svix-signature"),
        request.headers.get("svix-id"),
        request.headers.get("svix-timestamp"),
    ):
        logger.warning("[clerk webhook] signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )

    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    event_type = event.get("type")
    data = event.get("data") or {}
    clerk_id = data.get("id")
    logger.info("[clerk webhook] type=%s id=%s", event_type, clerk_id)

    try:
        if event_type == "user.created":
            reconciler.handle_identity_created(
                db, clerk_id, primary_email(data), name=display_name(data), image_url=data.get("image_url")
            )
        elif event_type == "user.updated":
            reconciler.handle_identity_updated(
                db, clerk_id, primary_email(data), name=display_name(data), image_url=data.get("image_url")
            )
        elif event_type == "user.deleted":
            if clerk_id:
                reconciler.handle_identity_deleted(db, clerk_id)
        else:
            logger.info("[clerk webhook] unhandled event type %s", event_type)
    except ValueError as e:
        logger.error("[clerk webhook] rejected %s: %s", event_type, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except IdentityConflict:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already belongs to another account"
        )

    return {"received": True}


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Billing events. Register https://your-backend.com/webhooks/stripe in the Stripe
    dashboard with the events handled below.
    """
    payload = await request.body()
    try:
        event = billing.verify_webhook(payload, request.headers.get("stripe-signature"))
    except ValueError as e:
        logger.warning("[stripe webhook] rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info("[stripe webhook] type=%s id=%s", event_type, event.get("id"))

    try:
        if event_type == "checkout.session.completed":
            _handle_checkout_completed(db, obj)
        elif event_type == "customer.subscription.created":
            reconciler.apply_subscription_snapshot(db, obj, SubscriptionEvent.SUBSCRIPTION_CREATED)
        elif event_type == "customer.subscription.updated":
            reconciler.apply_subscription_snapshot(db, obj, SubscriptionEvent.SUBSCRIPTION_UPDATED)
        elif event_type == "customer.subscription.deleted":
            reconciler.apply_subscription_deleted(db, obj)
        elif event_type == "invoice.payment_succeeded":
            reconciler.apply_payment_event(db, obj, SubscriptionEvent.PAYMENT_SUCCEEDED)
        elif event_type == "invoice.payment_failed":
            reconciler.apply_payment_event(db, obj, SubscriptionEvent.PAYMENT_FAILED)
        else:
            logger.info("[stripe webhook] unhandled event type %s", event_type)
    except InvalidTransition as e:
        # Non-2xx so Stripe redelivers (e.g. an update arriving before subscription.created)
        logger.error("[stripe webhook] %s %s: %s", event_type, event.get("id"), e)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        logger.error("[stripe webhook] malformed %s %s: %s", event_type, event.get("id"), e)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except billing.BillingError as e:
        logger.error("[stripe webhook] billing lookup failed for %s: %s", event.get("id"), e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Billing provider unavailable")

    return {"received": True}


def _handle_checkout_completed(db: Session, session: dict) -> None:
    """Link the billing customer to the account that started checkout."""
    clerk_id = (session.get("metadata") or {}).get("clerkId")
    customer = session.get("customer")
    customer_id = customer.get("id") if isinstance(customer, dict) else customer
    if not clerk_id or not customer_id:
        logger.warning("[stripe webhook] checkout.session.completed without clerkId/customer; skipped")
        return
    reconciler.link_billing_customer(db, clerk_id, customer_id)
