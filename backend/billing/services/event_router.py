"""Decide which reconciliation path a verified Stripe event takes."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Optional

from billing.events import CheckoutSessionObject, StripeEvent
from billing.exceptions import MalformedEvent

logger = logging.getLogger(__name__)


class Route(str, Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    IGNORE = "ignore"


PURCHASE_EVENTS = frozenset({
    "payment_intent.payment_failed",
    "charge.refunded",
})

# Always describe the customer's subscription.
SUBSCRIPTION_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.paused",
    "customer.subscription.resumed",
    "customer.subscription.pending_update_applied",
    "customer.subscription.pending_update_expired",
    "customer.subscription.trial_will_end",
    "invoice.upcoming",
})

# Only relevant when the payload references a subscription.
AMBIGUOUS_EVENTS = frozenset({
    "checkout.session.completed",
    "invoice.paid",
    "invoice.payment_failed",
    "invoice.payment_action_required",
    "invoice.marked_uncollectible",
    "invoice.payment_succeeded",
})


@dataclass(frozen=True)
class Classification:
    route: Route
    customer_id: Optional[str] = None
    reason: str = ""


def classify_event(event: StripeEvent) -> Classification:
    """Return the route for ``event``; rules are checked in order and the first match wins."""

    event_type = event.type
    data_object = event.data_object

    if event_type in PURCHASE_EVENTS:
        return Classification(route=Route.PURCHASE, reason="purchase_event")

    if (
        event_type == "checkout.session.completed"
        and isinstance(data_object, CheckoutSessionObject)
        and data_object.mode == "payment"
    ):
        return Classification(route=Route.PURCHASE, reason="payment_checkout")

    if event_type in SUBSCRIPTION_EVENTS:
        return Classification(
            route=Route.SUBSCRIPTION,
            customer_id=_require_customer(event),
            reason="subscription_event",
        )

    if event_type in AMBIGUOUS_EVENTS:
        if getattr(data_object, "subscription", None):
            return Classification(
                route=Route.SUBSCRIPTION,
                customer_id=_require_customer(event),
                reason="references_subscription",
            )
        return Classification(route=Route.IGNORE, reason="no_subscription_reference")

    return Classification(route=Route.IGNORE, reason="unsupported_event_type")


def _require_customer(event: StripeEvent) -> str:
    customer_id = event.customer_id
    if not customer_id:
        raise MalformedEvent(
            f"{event.type} event {event.id} does not reference a customer.",
            context={"event_type": event.type},
        )
    return customer_id
