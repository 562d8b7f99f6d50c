"""
Subscription status state machine.

States are the billing provider's statuses plus FREE (no billing subscription).
TRANSITIONS maps (state, event) to either a fixed next state or the set of
vendor-reported states that event may move to. Anything not in the table raises
InvalidTransition instead of overwriting the account.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Union


class SubscriptionState(str, Enum):
    FREE = "free"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class SubscriptionEvent(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    AUTO_RENEW_DISABLED = "auto_renew_disabled"
    AUTO_RENEW_ENABLED = "auto_renew_enabled"


class InvalidTransition(Exception):
    def __init__(self, state: SubscriptionState, event: SubscriptionEvent, reported: Optional[SubscriptionState] = None):
        self.state = state
        self.event = event
        self.reported = reported
        target = f" -> {reported.value}" if reported else ""
        super().__init__(f"Undefined subscription transition: {state.value} on {event.value}{target}")


# Statuses stored on the account row (FREE is derived, never stored)
STORED_STATUSES = frozenset(s.value for s in SubscriptionState if s is not SubscriptionState.FREE)

# Billing-provider statuses folded into ours
VENDOR_STATUS_ALIASES: Dict[str, SubscriptionState] = {
    "incomplete_expired": SubscriptionState.CANCELED,
    "unpaid": SubscriptionState.PAST_DUE,
    "paused": SubscriptionState.CANCELED,
}

# Vendor statuses after which the subscription can never become live again
TERMINAL_VENDOR_STATUSES = frozenset({"canceled", "incomplete_expired"})

S = SubscriptionState
E = SubscriptionEvent
_ANY_PAID = frozenset({S.INCOMPLETE, S.TRIALING, S.ACTIVE, S.PAST_DUE, S.CANCELED})

TRANSITIONS: Dict[Tuple[SubscriptionState, SubscriptionEvent], Union[SubscriptionState, FrozenSet[SubscriptionState]]] = {
    # A new subscription can start from anywhere (first purchase, resubscribe, redelivery)
    **{(state, E.SUBSCRIPTION_CREATED): _ANY_PAID for state in S},

    # Updates may arrive before "created" when deliveries are reordered.
    # CANCELED is not reachable from FREE: a late final update must not revive a deleted subscription
    (S.FREE, E.SUBSCRIPTION_UPDATED): frozenset({S.INCOMPLETE, S.TRIALING, S.ACTIVE, S.PAST_DUE}),
    (S.INCOMPLETE, E.SUBSCRIPTION_UPDATED): _ANY_PAID,
    (S.TRIALING, E.SUBSCRIPTION_UPDATED): frozenset({S.TRIALING, S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    (S.ACTIVE, E.SUBSCRIPTION_UPDATED): frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED}),
    (S.PAST_DUE, E.SUBSCRIPTION_UPDATED): frozenset({S.PAST_DUE, S.ACTIVE, S.CANCELED}),
    # canceled here means "cancels at period end", which can be undone
    (S.CANCELED, E.SUBSCRIPTION_UPDATED): frozenset({S.CANCELED, S.ACTIVE, S.TRIALING, S.PAST_DUE}),

    **{(state, E.SUBSCRIPTION_DELETED): S.FREE for state in S},

    (S.INCOMPLETE, E.PAYMENT_SUCCEEDED): S.ACTIVE,
    (S.TRIALING, E.PAYMENT_SUCCEEDED): S.ACTIVE,
    (S.ACTIVE, E.PAYMENT_SUCCEEDED): S.ACTIVE,
    (S.PAST_DUE, E.PAYMENT_SUCCEEDED): S.ACTIVE,
    (S.CANCELED, E.PAYMENT_SUCCEEDED): S.CANCELED,

    (S.INCOMPLETE, E.PAYMENT_FAILED): S.PAST_DUE,
    (S.TRIALING, E.PAYMENT_FAILED): S.PAST_DUE,
    (S.ACTIVE, E.PAYMENT_FAILED): S.PAST_DUE,
    (S.PAST_DUE, E.PAYMENT_FAILED): S.PAST_DUE,
    (S.CANCELED, E.PAYMENT_FAILED): S.PAST_DUE,

    (S.TRIALING, E.AUTO_RENEW_DISABLED): S.CANCELED,
    (S.ACTIVE, E.AUTO_RENEW_DISABLED): S.CANCELED,
    (S.PAST_DUE, E.AUTO_RENEW_DISABLED): S.CANCELED,
    (S.CANCELED, E.AUTO_RENEW_DISABLED): S.CANCELED,

    (S.TRIALING, E.AUTO_RENEW_ENABLED): S.TRIALING,
    (S.ACTIVE, E.AUTO_RENEW_ENABLED): S.ACTIVE,
    (S.PAST_DUE, E.AUTO_RENEW_ENABLED): S.PAST_DUE,
    (S.CANCELED, E.AUTO_RENEW_ENABLED): S.ACTIVE,
}


def normalize_vendor_status(status: Optional[str]) -> SubscriptionState:
    """Map a billing-provider status string onto a paid state; unknown strings raise ValueError."""
    if status in VENDOR_STATUS_ALIASES:
        return VENDOR_STATUS_ALIASES[status]
    state = SubscriptionState(status)
    if state is SubscriptionState.FREE:
        raise ValueError("'free' is not a billing provider status")
    return state


def current_state(account) -> SubscriptionState:
    """FREE when the account holds no billing subscription, else its stored status."""
    if not account.stripe_subscription_id:
        return SubscriptionState.FREE
    return SubscriptionState(account.subscription_status)


def next_state(
    state: SubscriptionState,
    event: SubscriptionEvent,
    reported: Optional[SubscriptionState] = None,
) -> SubscriptionState:
    rule = TRANSITIONS.get((state, event))
    if rule is None:
        raise InvalidTransition(state, event, reported)
    if isinstance(rule, SubscriptionState):
        return rule
    if reported is None or reported not in rule:
        raise InvalidTransition(state, event, reported)
    return reported
