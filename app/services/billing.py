"""
Billing provider seam (Stripe).
Every Stripe call in the app goes through here so timeouts and error types are uniform
and route/reconciler code works with plain dicts.
"""
import json
import logging
import os
from typing import Optional

import stripe

logger = logging.getLogger(__name__)

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_TIMEOUT_SECONDS = int(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))

# Callers never hang on the billing provider
stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)
stripe.max_network_retries = 2


class BillingError(Exception):
    """A Stripe call failed or Stripe is not configured."""


def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    # StripeObject serialises to its JSON representation
    return json.loads(str(obj))


def _require_api_key() -> None:
    if not stripe.api_key:
        raise BillingError("Stripe is not configured (STRIPE_SECRET_KEY missing)")


def retrieve_subscription(subscription_id: str) -> dict:
    _require_api_key()
    try:
        return _as_dict(stripe.Subscription.retrieve(subscription_id))
    except stripe.StripeError as e:
        logger.error("[billing] retrieve subscription %s failed: %s", subscription_id, e)
        raise BillingError(str(e)) from e


def set_cancel_at_period_end(subscription_id: str, cancel_at_period_end: bool) -> dict:
    _require_api_key()
    try:
        return _as_dict(stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel_at_period_end))
    except stripe.StripeError as e:
        logger.error("[billing] update subscription %s failed: %s", subscription_id, e)
        raise BillingError(str(e)) from e


def cancel_subscription(subscription_id: str) -> dict:
    _require_api_key()
    try:
        return _as_dict(stripe.Subscription.cancel(subscription_id))
    except stripe.StripeError as e:
        logger.error("[billing] cancel subscription %s failed: %s", subscription_id, e)
        raise BillingError(str(e)) from e


def create_customer(email: str, clerk_id: str, name: Optional[str] = None) -> str:
    _require_api_key()
    try:
        customer = stripe.Customer.create(
            email=email,
            name=name or None,
            metadata={"clerkId": clerk_id},
        )
        return customer.id
    except stripe.StripeError as e:
        logger.error("[billing] create customer for %s failed: %s", clerk_id, e)
        raise BillingError(str(e)) from e


def delete_customer(customer_id: str) -> None:
    _require_api_key()
    try:
        stripe.Customer.delete(customer_id)
    except stripe.StripeError as e:
        logger.error("[billing] delete customer %s failed: %s", customer_id, e)
        raise BillingError(str(e)) from e


def create_checkout_session(
    customer_id: str,
    price_id: str,
    clerk_id: str,
    plan_id: str,
    success_url: str,
    cancel_url: str,
) -> dict:
    _require_api_key()
    metadata = {"clerkId": clerk_id, "planId": plan_id}
    try:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        return {"id": session.id, "url": session.url}
    except stripe.StripeError as e:
        logger.error("[billing] checkout session for %s failed: %s", clerk_id, e)
        raise BillingError(str(e)) from e


def create_portal_session(customer_id: str, return_url: str) -> str:
    _require_api_key()
    try:
        session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
        return session.url
    except stripe.StripeError as e:
        logger.error("[billing] portal session for %s failed: %s", customer_id, e)
        raise BillingError(str(e)) from e


def verify_webhook(payload: bytes, signature_header: Optional[str]) -> dict:
    """
    Check the Stripe-Signature header against STRIPE_WEBHOOK_SECRET and return the
    decoded event. Raises ValueError for anything that should not be trusted.
    """
    if not STRIPE_WEBHOOK_SECRET:
        raise ValueError("STRIPE_WEBHOOK_SECRET is not set")
    if not signature_header:
        raise ValueError("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature_header,
            STRIPE_WEBHOOK_SECRET,
            stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except stripe.SignatureVerificationError as e:
        raise ValueError(f"Invalid signature: {e}") from e
    return json.loads(payload)
