"""
Billing routes: Stripe Checkout for upgrades and the Stripe customer portal.
Subscription state itself is only written by the webhooks.
"""
import logging
import os
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.core.errors import api_error, VALIDATION_ERROR, UPSTREAM_ERROR
from app.core.plans import DEFAULT_PLAN_ID, get_plan, price_id_for
from app.db.session import get_db
from app.dependencies.auth import get_current_account
from app.models.user import User
from app.schemas.billing import CheckoutSessionRequest, CheckoutSessionResponse, PortalSessionResponse
from app.services import billing, reconciler

logger = logging.getLogger(__name__)

router = APIRouter()

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    request: CheckoutSessionRequest,
    user: User = Depends(get_current_account),
    db: Session = Depends(get_db),
):
    """
    Create a Stripe Checkout Session for a paid plan.
    Returns the checkout URL to redirect the user to.
    """
    plan = get_plan(request.plan_id)
    if not plan or plan["id"] == DEFAULT_PLAN_ID:
        raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, "Invalid plan selected")

    price_id = price_id_for(plan["id"], request.billing_period)
    if not price_id:
        logger.error("[billing] no %s price configured for plan %s", request.billing_period, plan["id"])
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe price ID not configured"
        )

    try:
        customer_id = user.stripe_customer_id
        if not customer_id:
            customer_id = billing.create_customer(user.email, user.clerk_id, name=user.name)
            reconciler.link_billing_customer(db, user.clerk_id, customer_id)

        session = billing.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            clerk_id=user.clerk_id,
            plan_id=plan["id"],
            success_url=f"{APP_URL}/dashboard/billing?success=true",
            cancel_url=f"{APP_URL}/pricing?canceled=true",
        )
    except billing.BillingError:
        raise api_error(status.HTTP_502_BAD_GATEWAY, UPSTREAM_ERROR, "Failed to create checkout session")

    logger.info("[billing] checkout session %s for %s (%s)", session["id"], user.clerk_id, plan["id"])
    return {"url": session["url"], "session_id": session["id"]}


@router.post("/create-portal-session", response_model=PortalSessionResponse)
def create_portal_session(user: User = Depends(get_current_account)):
    if not user.stripe_customer_id:
        raise api_error(status.HTTP_400_BAD_REQUEST, VALIDATION_ERROR, "No active subscription to manage")
    try:
        url = billing.create_portal_session(user.stripe_customer_id, f"{APP_URL}/dashboard/billing")
    except billing.BillingError:
        raise api_error(status.HTTP_502_BAD_GATEWAY, UPSTREAM_ERROR, "Failed to create portal session")
    return {"url": url}
