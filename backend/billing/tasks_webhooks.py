"""Stripe webhook dispatch: decode, classify and hand events to the reconcilers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from billing.events import decode_event
from billing.exceptions import MalformedEvent, UnattributableEvent
from billing.services.event_router import Route, classify_event
from billing.services.purchase_reconciler import reconcile_purchase_event
from billing.services.stripe_gateway import StripeGateway
from billing.services.subscription_sync import sync_customer_subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a webhook handler invocation."""

    status: str
    detail: str = ""
    route: str = Route.IGNORE.value
    user_id: Optional[Any] = None
    credits_delta: int = 0
    dead_letter_reason: Optional[str] = None
    dead_letter_payload: Optional[Dict[str, Any]] = None

    PROCESSED = "processed"
    IGNORED = "ignored"
    DEAD_LETTER = "dead_letter"
    ALREADY_PROCESSED = "already_processed"
    ERROR = "error"


def dispatch_event(
    *,
    event_id: str,
    event_type: str,
    payload: Dict[str, Any],
    gateway: Optional[StripeGateway] = None,
) -> HandlerResult:
    """Route a Stripe webhook event to its reconciler.

    Unattributable events come back as ``DEAD_LETTER`` results (or ``IGNORED``
    when the checkout carried no purchase reference). Provider and database
    errors propagate so the calling task can retry them.
    """

    try:
        event = decode_event(payload)
        classification = classify_event(event)
    except MalformedEvent as exc:
        logger.warning("Malformed Stripe event %s (%s): %s", event_id, event_type, exc.detail)
        return HandlerResult(
            status=HandlerResult.DEAD_LETTER,
            detail=exc.detail,
            dead_letter_reason=exc.reason,
        )

    if classification.route is Route.IGNORE:
        logger.info("Ignoring Stripe event %s (%s): %s", event_id, event_type, classification.reason)
        return HandlerResult(status=HandlerResult.IGNORED, detail=classification.reason)

    if classification.route is Route.PURCHASE:
        return _handle_purchase_event(event, gateway=gateway)

    return _handle_subscription_event(event, classification.customer_id, gateway=gateway)


def _handle_purchase_event(event, *, gateway: Optional[StripeGateway]) -> HandlerResult:
    route = Route.PURCHASE.value
    try:
        outcome = reconcile_purchase_event(event, gateway=gateway)
    except UnattributableEvent as exc:
        if exc.reason == "missing_purchase_id":
            logger.warning("Stripe event %s (%s) carries no purchase reference; ignoring.", event.id, event.type)
            return HandlerResult(status=HandlerResult.IGNORED, detail=exc.reason, route=route)
        logger.warning("Unattributable purchase event %s (%s): %s", event.id, event.type, exc.detail)
        return HandlerResult(
            status=HandlerResult.DEAD_LETTER,
            detail=exc.detail,
            route=route,
            dead_letter_reason=exc.reason,
        )

    if not outcome.changed:
        return HandlerResult(
            status=HandlerResult.ALREADY_PROCESSED,
            detail=f"purchase {outcome.purchase_id}: {outcome.detail}",
            route=route,
        )

    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail=f"purchase {outcome.purchase_id}: {outcome.previous_status} -> {outcome.status}",
        route=route,
        credits_delta=outcome.credits_delta,
    )


def _handle_subscription_event(event, customer_id: str, *, gateway: Optional[StripeGateway]) -> HandlerResult:
    route = Route.SUBSCRIPTION.value
    try:
        outcome = sync_customer_subscription(
            customer_id,
            event_type=event.type,
            event_id=event.id,
            gateway=gateway,
        )
    except UnattributableEvent as exc:
        logger.warning("Unattributable subscription event %s (%s): %s", event.id, event.type, exc.detail)
        return HandlerResult(
            status=HandlerResult.DEAD_LETTER,
            detail=exc.detail,
            route=route,
            dead_letter_reason=exc.reason,
        )

    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail=f"subscription status={outcome.status} credits={outcome.credits_granted}",
        route=route,
        user_id=outcome.user_id,
        credits_delta=outcome.credits_granted,
    )


__all__ = [
    "dispatch_event",
    "HandlerResult",
]
