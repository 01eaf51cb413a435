"""Mirror a customer's Stripe subscription into the local :class:`Subscription` row.

Subscription events are treated as a hint only: the handler re-reads the
customer's current subscription from Stripe and overwrites the local copy, so
out-of-order or duplicated deliveries converge on the same state.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from billing.events import coerce_timestamp, reference_id
from billing.exceptions import UnattributableEvent
from billing.models import CreditTransaction, Subscription
from billing.observability.logging import log_billing_event
from billing.services.credit_ledger import (
    apply_credit_delta,
    subscription_cycle_key,
    subscription_upgrade_key,
)
from billing.services.price_catalog import get_credits_for_price
from billing.services.stripe_gateway import StripeGateway, get_stripe_gateway

logger = logging.getLogger(__name__)

RENEWAL_EVENT = "invoice.payment_succeeded"
ACTIVE_STATUS = "active"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Authoritative fields extracted from a Stripe subscription object."""

    subscription_id: str
    price_id: str
    interval: str
    status: str
    period_start: Optional[int]
    period_end: Optional[int]
    cancel_at_period_end: bool
    extra: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class CreditDecision:
    amount: int
    kind: str = ""
    idempotency_key: Optional[str] = None
    reason: str = ""


@dataclass(frozen=True)
class SubscriptionSyncResult:
    user_id: Any
    status: str
    subscription_id: str = ""
    price_id: str = ""
    created: bool = False
    credits_granted: int = 0
    reason: str = ""


def sync_customer_subscription(
    customer_id: str,
    *,
    event_type: str = "",
    event_id: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> SubscriptionSyncResult:
    """Re-fetch ``customer_id``'s subscription from Stripe and store it locally.

    Credits are granted for activations, renewals and upgrades; every grant is
    keyed on the subscription period so repeated deliveries grant once.
    Raises :class:`UnattributableEvent` when no local user owns the customer.
    """

    User = get_user_model()
    user = User.objects.filter(stripe_customer_id=customer_id).first()
    if user is None:
        raise UnattributableEvent(
            "unknown_customer",
            f"No user mapped to Stripe customer {customer_id}.",
            context={"customer_id": customer_id},
        )

    gateway = gateway or get_stripe_gateway()
    subscriptions = gateway.list_customer_subscriptions(customer_id)

    if not subscriptions:
        return _mark_without_subscription(user, customer_id)

    if len(subscriptions) > 1:
        logger.warning("Customer %s has several subscriptions; using the most recent one.", customer_id)

    snapshot = extract_snapshot(subscriptions[0])

    with transaction.atomic():
        existing = Subscription.objects.select_for_update().filter(user=user).first()
        if existing is None:
            # A row may exist for this customer under a previous owner; the customer id is unique.
            existing = Subscription.objects.select_for_update().filter(stripe_customer_id=customer_id).first()

        decision = decide_credit_grant(
            snapshot,
            previous_price_id=existing.stripe_price_id if existing else None,
            has_previous=existing is not None,
            event_type=event_type,
        )
        if decision.kind == CreditTransaction.Kind.SUBSCRIPTION_CYCLE and _period_already_granted(decision):
            # One base allotment per period; an upgrade inside the period was already topped up.
            decision = CreditDecision(amount=0, reason="period_already_granted")

        subscription = existing or Subscription(user=user)
        subscription.user = user
        subscription.stripe_customer_id = customer_id
        subscription.stripe_subscription_id = snapshot.subscription_id
        subscription.stripe_price_id = snapshot.price_id
        subscription.interval = snapshot.interval
        subscription.status = snapshot.status
        subscription.current_period_start = coerce_timestamp(snapshot.period_start)
        subscription.current_period_end = coerce_timestamp(snapshot.period_end)
        subscription.cancel_at_period_end = snapshot.cancel_at_period_end
        subscription.extra = snapshot.extra
        subscription.last_synced_at = timezone.now()
        subscription.save()

        granted = 0
        if decision.amount > 0:
            result = apply_credit_delta(
                user=user,
                amount=decision.amount,
                kind=decision.kind,
                idempotency_key=decision.idempotency_key,
                stripe_event_id=event_id,
                stripe_subscription_id=snapshot.subscription_id,
                description=f"Subscription credits ({decision.reason})",
                metadata={"price_id": snapshot.price_id, "event_type": event_type},
            )
            granted = result.delta if result.created else 0

    log_billing_event(
        message="subscription.synced",
        event_id=event_id,
        user_id=user.pk,
        extra={
            "subscription_id": snapshot.subscription_id,
            "price_id": snapshot.price_id,
            "status": snapshot.status,
            "credits_granted": granted,
            "credit_reason": decision.reason,
        },
    )

    return SubscriptionSyncResult(
        user_id=user.pk,
        status=snapshot.status,
        subscription_id=snapshot.subscription_id,
        price_id=snapshot.price_id,
        created=existing is None,
        credits_granted=granted,
        reason=decision.reason,
    )


def decide_credit_grant(
    snapshot: SubscriptionSnapshot,
    *,
    previous_price_id: Optional[str],
    has_previous: bool,
    event_type: str,
) -> CreditDecision:
    """Work out how many credits a sync grants; the first matching rule wins."""

    if snapshot.status != ACTIVE_STATUS:
        return CreditDecision(amount=0, reason="not_active")

    new_credits = get_credits_for_price(snapshot.price_id, subscription=True)

    if not has_previous:
        return _cycle_grant(snapshot, new_credits, "activation")

    if snapshot.price_id != (previous_price_id or ""):
        old_credits = get_credits_for_price(previous_price_id, subscription=True)
        if old_credits == 0:
            return _cycle_grant(snapshot, new_credits, "activation")
        difference = max(0, new_credits - old_credits)
        if difference == 0:
            return CreditDecision(amount=0, reason="downgrade")
        return CreditDecision(
            amount=difference,
            kind=CreditTransaction.Kind.SUBSCRIPTION_UPGRADE,
            idempotency_key=subscription_upgrade_key(
                snapshot.subscription_id,
                previous_price_id or "",
                snapshot.price_id,
                snapshot.period_start,
            ),
            reason="upgrade",
        )

    if event_type == RENEWAL_EVENT:
        return _cycle_grant(snapshot, new_credits, "renewal")

    return CreditDecision(amount=0, reason="no_change")


def _cycle_grant(snapshot: SubscriptionSnapshot, credits: int, reason: str) -> CreditDecision:
    if credits <= 0:
        return CreditDecision(amount=0, reason=reason)
    return CreditDecision(
        amount=credits,
        kind=CreditTransaction.Kind.SUBSCRIPTION_CYCLE,
        idempotency_key=subscription_cycle_key(snapshot.subscription_id, snapshot.period_start),
        reason=reason,
    )


def extract_snapshot(subscription: Dict[str, Any]) -> SubscriptionSnapshot:
    items = ((subscription.get("items") or {}).get("data")) or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    recurring = price.get("recurring") if isinstance(price, dict) else None

    # Recent API versions report the billing period per item rather than on the subscription.
    period_start = subscription.get("current_period_start") or first_item.get("current_period_start")
    period_end = subscription.get("current_period_end") or first_item.get("current_period_end")

    return SubscriptionSnapshot(
        subscription_id=str(subscription.get("id") or ""),
        price_id=reference_id(price) or "",
        interval=str((recurring or {}).get("interval") or ""),
        status=str(subscription.get("status") or ""),
        period_start=int(period_start) if period_start else None,
        period_end=int(period_end) if period_end else None,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        extra=_card_details(subscription.get("default_payment_method")),
    )


def _period_already_granted(decision: CreditDecision) -> bool:
    return CreditTransaction.objects.filter(idempotency_key=decision.idempotency_key).exists()


def _card_details(payment_method: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(payment_method, dict):
        return None
    card = payment_method.get("card") or {}
    return {"brand": card.get("brand"), "last4": card.get("last4")}


def _mark_without_subscription(user, customer_id: str) -> SubscriptionSyncResult:
    with transaction.atomic():
        subscription = Subscription.objects.select_for_update().filter(user=user).first()
        created = subscription is None
        if created:
            subscription = Subscription(user=user, stripe_customer_id=customer_id)
        subscription.stripe_customer_id = customer_id
        subscription.status = Subscription.STATUS_NONE
        subscription.last_synced_at = timezone.now()
        subscription.save()

    logger.info("Customer %s has no Stripe subscription; marked user %s as 'none'.", customer_id, user.pk)
    return SubscriptionSyncResult(
        user_id=user.pk,
        status=Subscription.STATUS_NONE,
        created=created,
        reason="no_subscription",
    )
