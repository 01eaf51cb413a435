"""Apply one-time payment events to :class:`Purchase` records."""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
import logging
from typing import Any, Dict, List, Optional

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from billing.events import (
    ChargeObject,
    CheckoutSessionObject,
    PaymentIntentObject,
    StripeEvent,
    reference_id,
    string_metadata,
)
from billing.exceptions import MalformedEvent, UnattributableEvent
from billing.models import CreditTransaction, Purchase
from billing.observability.logging import log_billing_event
from billing.services.credit_ledger import (
    apply_credit_delta,
    granted_purchase_credits,
    purchase_grant_key,
    purchase_revoke_key,
)
from billing.services.notifications import notify_purchase_completed
from billing.services.price_catalog import get_credits_for_price
from billing.services.stripe_gateway import StripeGateway, get_stripe_gateway

logger = logging.getLogger(__name__)

PURCHASE_ID_METADATA_KEY = "purchaseId"

TARGET_STATUS_BY_EVENT = {
    "checkout.session.completed": Purchase.Status.COMPLETED,
    "payment_intent.payment_failed": Purchase.Status.FAILED,
    "charge.refunded": Purchase.Status.REFUNDED,
}

# Terminal states never regress; FAILED may still complete when the buyer retries the same session.
ALLOWED_TRANSITIONS = {
    Purchase.Status.PENDING: {Purchase.Status.COMPLETED, Purchase.Status.FAILED, Purchase.Status.REFUNDED},
    Purchase.Status.FAILED: {Purchase.Status.COMPLETED},
    Purchase.Status.COMPLETED: {Purchase.Status.REFUNDED},
    Purchase.Status.REFUNDED: set(),
}


@dataclass(frozen=True)
class PaymentContext:
    session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    session_metadata: Dict[str, str] = field(default_factory=dict)
    payment_intent_metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def purchase_id(self) -> Optional[str]:
        return (
            self.session_metadata.get(PURCHASE_ID_METADATA_KEY)
            or self.payment_intent_metadata.get(PURCHASE_ID_METADATA_KEY)
            or None
        )


@dataclass(frozen=True)
class PurchaseReconciliation:
    purchase_id: str
    previous_status: str
    status: str
    changed: bool
    credits_delta: int = 0
    detail: str = ""


def reconcile_purchase_event(event: StripeEvent, *, gateway: Optional[StripeGateway] = None) -> PurchaseReconciliation:
    """Move the purchase referenced by ``event`` to the status the event implies.

    Stripe reads happen first; the purchase row is then locked and re-checked
    inside a single transaction together with any credit grant or revocation.
    Raises :class:`UnattributableEvent` when no local purchase can be found.
    """

    target = TARGET_STATUS_BY_EVENT.get(event.type)
    if target is None:
        raise ValueError(f"Event type '{event.type}' is not a purchase event.")

    gateway = gateway or get_stripe_gateway()
    context = _resolve_payment_context(event, gateway)

    purchase_id = context.purchase_id
    if not purchase_id:
        raise UnattributableEvent(
            "missing_purchase_id",
            f"No {PURCHASE_ID_METADATA_KEY} in checkout session or payment intent metadata.",
            context={"session_id": context.session_id, "payment_intent_id": context.payment_intent_id},
        )

    price_id = _resolve_price_id(context.session_id, gateway)

    purchase = _load_purchase(purchase_id)
    if purchase is None:
        raise UnattributableEvent(
            "unknown_purchase",
            f"Purchase {purchase_id} referenced by event {event.id} does not exist.",
            context={"purchase_id": purchase_id},
        )

    credits = get_credits_for_price(price_id or purchase.stripe_price_id)

    if target == Purchase.Status.COMPLETED and purchase.status == Purchase.Status.COMPLETED:
        logger.info("Purchase %s already completed; ignoring duplicate event %s.", purchase.pk, event.id)
        return PurchaseReconciliation(
            purchase_id=str(purchase.pk),
            previous_status=purchase.status,
            status=purchase.status,
            changed=False,
            detail="already_completed",
        )

    with transaction.atomic():
        locked = Purchase.objects.select_for_update().select_related("user").get(pk=purchase.pk)
        previous_status = locked.status

        if target == previous_status:
            return PurchaseReconciliation(
                purchase_id=str(locked.pk),
                previous_status=previous_status,
                status=previous_status,
                changed=False,
                detail="status_unchanged",
            )

        if target not in ALLOWED_TRANSITIONS.get(previous_status, set()):
            logger.warning(
                "Ignoring %s -> %s transition for purchase %s from event %s (%s).",
                previous_status,
                target,
                locked.pk,
                event.id,
                event.type,
            )
            return PurchaseReconciliation(
                purchase_id=str(locked.pk),
                previous_status=previous_status,
                status=previous_status,
                changed=False,
                detail="transition_not_allowed",
            )

        locked.status = target
        update_fields = ["status", "updated_at"]
        if context.payment_intent_id:
            locked.stripe_payment_intent_id = context.payment_intent_id
            update_fields.append("stripe_payment_intent_id")
        if context.session_id and not locked.stripe_session_id:
            locked.stripe_session_id = context.session_id
            update_fields.append("stripe_session_id")
        if target == Purchase.Status.COMPLETED:
            locked.completed_at = timezone.now()
            update_fields.append("completed_at")
        locked.save(update_fields=update_fields)

        credits_delta = 0
        if target == Purchase.Status.COMPLETED and credits > 0 and previous_status != Purchase.Status.COMPLETED:
            result = apply_credit_delta(
                user=locked.user,
                amount=credits,
                kind=CreditTransaction.Kind.PURCHASE_GRANT,
                idempotency_key=purchase_grant_key(locked.pk),
                purchase=locked,
                stripe_event_id=event.id,
                description=f"Credits for purchase of {locked.product}",
                metadata={"price_id": price_id or locked.stripe_price_id},
            )
            credits_delta = result.delta if result.created else 0

        elif target == Purchase.Status.REFUNDED and previous_status == Purchase.Status.COMPLETED:
            granted = granted_purchase_credits(locked)
            revoke = granted if granted is not None else credits
            if revoke > 0:
                result = apply_credit_delta(
                    user=locked.user,
                    amount=-revoke,
                    kind=CreditTransaction.Kind.PURCHASE_REVOKE,
                    idempotency_key=purchase_revoke_key(locked.pk),
                    purchase=locked,
                    stripe_event_id=event.id,
                    description=f"Refund of purchase {locked.product}",
                )
                credits_delta = result.delta if result.created else 0

        if target == Purchase.Status.COMPLETED:
            transaction.on_commit(partial(notify_purchase_completed, locked.pk))

    log_billing_event(
        message="purchase.status_changed",
        event_id=event.id,
        user_id=locked.user_id,
        extra={
            "purchase_id": str(locked.pk),
            "from_status": previous_status,
            "to_status": target,
            "credits_delta": credits_delta,
        },
    )

    return PurchaseReconciliation(
        purchase_id=str(locked.pk),
        previous_status=previous_status,
        status=target,
        changed=True,
        credits_delta=credits_delta,
    )


def _resolve_payment_context(event: StripeEvent, gateway: StripeGateway) -> PaymentContext:
    data_object = event.data_object

    if isinstance(data_object, CheckoutSessionObject):
        intent_metadata: Dict[str, str] = {}
        if data_object.payment_intent:
            intent = gateway.retrieve_payment_intent(data_object.payment_intent)
            intent_metadata = string_metadata(intent)
        return PaymentContext(
            session_id=data_object.id,
            payment_intent_id=data_object.payment_intent,
            session_metadata=data_object.metadata,
            payment_intent_metadata=intent_metadata,
        )

    if isinstance(data_object, PaymentIntentObject):
        return _context_from_payment_intent(data_object.id, data_object.metadata, gateway)

    if isinstance(data_object, ChargeObject):
        if not data_object.payment_intent:
            # Charges created outside checkout can only be attributed through their own metadata.
            return PaymentContext(payment_intent_metadata=data_object.metadata)
        intent = gateway.retrieve_payment_intent(data_object.payment_intent)
        return _context_from_payment_intent(data_object.payment_intent, string_metadata(intent), gateway)

    raise MalformedEvent(f"Unexpected payload for purchase event {event.type}.", context={"event_type": event.type})


def _context_from_payment_intent(payment_intent_id: str, intent_metadata: Dict[str, str],
                                 gateway: StripeGateway) -> PaymentContext:
    session = gateway.find_checkout_session_for_payment_intent(payment_intent_id)
    return PaymentContext(
        session_id=reference_id(session.get("id")) if session else None,
        payment_intent_id=payment_intent_id,
        session_metadata=string_metadata(session) if session else {},
        payment_intent_metadata=intent_metadata,
    )


def _resolve_price_id(session_id: Optional[str], gateway: StripeGateway) -> Optional[str]:
    if not session_id:
        return None
    line_items: List[Dict[str, Any]] = gateway.list_line_items(session_id)
    if not line_items:
        return None
    return reference_id(line_items[0].get("price"))


def _load_purchase(purchase_id: str) -> Optional[Purchase]:
    try:
        return Purchase.objects.filter(pk=purchase_id).first()
    except (ValidationError, ValueError):
        logger.warning("Purchase id %r is not a valid identifier.", purchase_id)
        return None
