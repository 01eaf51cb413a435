"""Typed views over verified Stripe webhook events.

Stripe delivers events as loosely shaped JSON. Everything downstream of the
webhook boundary works with the frozen dataclasses below instead, so a payload
missing an identifier is rejected once, here, with :class:`MalformedEvent`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Mapping, Optional, Union

from billing.exceptions import MalformedEvent


@dataclass(frozen=True)
class CheckoutSessionObject:
    id: str
    mode: str = ""
    payment_intent: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentIntentObject:
    id: str
    customer: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeObject:
    id: str
    payment_intent: Optional[str] = None
    refunded: bool = False
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceObject:
    # ``invoice.upcoming`` previews carry no id.
    id: Optional[str]
    customer: str
    subscription: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionObject:
    id: str
    customer: str
    status: str = ""


@dataclass(frozen=True)
class OtherObject:
    """Any payload the reconcilers do not act on."""

    id: Optional[str]
    object: str = ""


EventObject = Union[
    CheckoutSessionObject,
    PaymentIntentObject,
    ChargeObject,
    InvoiceObject,
    SubscriptionObject,
    OtherObject,
]


@dataclass(frozen=True)
class StripeEvent:
    id: str
    type: str
    data_object: EventObject
    created: Optional[datetime] = None
    livemode: bool = False

    @property
    def customer_id(self) -> Optional[str]:
        return getattr(self.data_object, "customer", None)


def reference_id(value: Any) -> Optional[str]:
    """Return the id of a Stripe reference, whether expanded or not."""

    if value in (None, ""):
        return None
    if isinstance(value, Mapping):
        identifier = value.get("id")
        return str(identifier) if identifier else None
    return str(value)


def coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def string_metadata(payload: Mapping[str, Any]) -> Dict[str, str]:
    metadata = payload.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        return {}
    return {str(key): "" if value is None else str(value) for key, value in metadata.items()}


def _require(payload: Mapping[str, Any], key: str, event_type: str) -> str:
    value = reference_id(payload.get(key))
    if not value:
        raise MalformedEvent(
            f"{event_type} payload is missing '{key}'.",
            context={"event_type": event_type},
        )
    return value


def _invoice_subscription(payload: Mapping[str, Any]) -> Optional[str]:
    subscription = reference_id(payload.get("subscription"))
    if subscription:
        return subscription
    # Newer API versions nest the reference under ``parent.subscription_details``.
    parent = payload.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, Mapping) else None
    if isinstance(details, Mapping):
        return reference_id(details.get("subscription"))
    return None


def _decode_object(event_type: str, payload: Mapping[str, Any]) -> EventObject:
    if event_type.startswith("checkout.session."):
        return CheckoutSessionObject(
            id=_require(payload, "id", event_type),
            mode=str(payload.get("mode") or "").lower(),
            payment_intent=reference_id(payload.get("payment_intent")),
            subscription=reference_id(payload.get("subscription")),
            customer=reference_id(payload.get("customer")),
            metadata=string_metadata(payload),
        )
    if event_type.startswith("payment_intent."):
        return PaymentIntentObject(
            id=_require(payload, "id", event_type),
            customer=reference_id(payload.get("customer")),
            metadata=string_metadata(payload),
        )
    if event_type.startswith("charge."):
        return ChargeObject(
            id=_require(payload, "id", event_type),
            payment_intent=reference_id(payload.get("payment_intent")),
            refunded=bool(payload.get("refunded")),
            metadata=string_metadata(payload),
        )
    if event_type.startswith("invoice."):
        return InvoiceObject(
            id=reference_id(payload.get("id")),
            customer=_require(payload, "customer", event_type),
            subscription=_invoice_subscription(payload),
        )
    if event_type.startswith("customer.subscription."):
        return SubscriptionObject(
            id=_require(payload, "id", event_type),
            customer=_require(payload, "customer", event_type),
            status=str(payload.get("status") or ""),
        )
    return OtherObject(id=reference_id(payload.get("id")), object=str(payload.get("object") or ""))


def decode_event(payload: Mapping[str, Any]) -> StripeEvent:
    """Build a :class:`StripeEvent` from a verified event dictionary."""

    if not isinstance(payload, Mapping):
        raise MalformedEvent("Stripe event payload must be an object.")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise MalformedEvent("Stripe event is missing its id or type.")

    data = payload.get("data") or {}
    data_object = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(data_object, Mapping):
        raise MalformedEvent(
            f"Stripe event {event_id} has no data object.",
            context={"event_type": event_type},
        )

    return StripeEvent(
        id=str(event_id),
        type=str(event_type),
        data_object=_decode_object(str(event_type), data_object),
        created=coerce_timestamp(payload.get("created")),
        livemode=bool(payload.get("livemode")),
    )
