"""Subscription checkout and customer portal sessions."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Iterable, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db.models import Q

from billing.exceptions import (
    MissingStripeCustomer,
    StripeConfigurationError,
    SubscriptionAlreadyActive,
)
from billing.models import Subscription
from billing.observability.logging import log_billing_event
from billing.services.purchases import (
    append_checkout_params,
    build_public_url,
    default_cancel_url,
    default_success_url,
)
from billing.services.stripe_gateway import StripeGateway, get_stripe_gateway

logger = logging.getLogger(__name__)

PENDING_STATUS = "pending"
ACTIVE_LOOKUP_LIMIT = 10


@dataclass(frozen=True)
class SubscriptionCheckoutResult:
    subscription: Subscription
    checkout_url: Optional[str]
    session_id: str


def ensure_stripe_customer(user, *, gateway: Optional[StripeGateway] = None) -> str:
    """Return the user's Stripe customer id, creating the customer on first use."""

    if user.stripe_customer_id:
        return user.stripe_customer_id

    gateway = gateway or get_stripe_gateway()
    customer = gateway.create_customer(
        email=user.email,
        name=user.get_full_name() or None,
        metadata={"userId": user.pk},
    )
    customer_id = str(customer.get("id") or "")

    User = get_user_model()
    updated = (
        User.objects.filter(pk=user.pk)
        .filter(Q(stripe_customer_id__isnull=True) | Q(stripe_customer_id=""))
        .update(stripe_customer_id=customer_id)
    )
    if not updated:
        # A concurrent request stored a customer first; keep theirs.
        user.refresh_from_db(fields=["stripe_customer_id"])
        logger.warning(
            "User %s already had Stripe customer %s; created customer %s is unused.",
            user.pk,
            user.stripe_customer_id,
            customer_id,
        )
        return user.stripe_customer_id

    user.stripe_customer_id = customer_id
    log_billing_event(
        message="customer.created",
        user_id=user.pk,
        extra={"customer_id": customer_id},
    )
    return customer_id


def _subscribes_to_price(subscription: Dict[str, Any], price_id: str) -> bool:
    if subscription.get("status") != "active":
        return False
    items = (subscription.get("items") or {}).get("data") or []
    for item in items:
        price = item.get("price")
        item_price_id = price.get("id") if isinstance(price, dict) else price
        if item_price_id == price_id:
            return True
    return False


def _has_active_subscription(subscriptions: Iterable[Dict[str, Any]], price_id: str) -> bool:
    return any(_subscribes_to_price(subscription, price_id) for subscription in subscriptions)


def create_subscription_checkout(
    *,
    user,
    price_id: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> SubscriptionCheckoutResult:
    """Open a subscription checkout session for ``price_id``.

    The local row is created as ``pending`` with no price; the webhook sync
    fills it in from Stripe, so the first sync counts as an activation.
    Raises :class:`SubscriptionAlreadyActive` when the customer already pays
    for the same price.
    """

    gateway = gateway or get_stripe_gateway()
    customer_id = ensure_stripe_customer(user, gateway=gateway)

    existing = gateway.list_customer_subscriptions(customer_id, limit=ACTIVE_LOOKUP_LIMIT)
    if _has_active_subscription(existing, price_id):
        raise SubscriptionAlreadyActive("You already have an active subscription to this plan.")

    subscription, _ = Subscription.objects.get_or_create(
        user=user,
        defaults={"stripe_customer_id": customer_id, "status": PENDING_STATUS},
    )

    metadata = {"subscriptionId": subscription.pk, "priceId": price_id, "userId": user.pk}
    session = gateway.create_checkout_session(
        success_url=append_checkout_params(
            success_url or default_success_url(), {"price": price_id}, include_session=True
        ),
        cancel_url=append_checkout_params(cancel_url or default_cancel_url(), {"price": price_id}),
        line_items=[{"price": price_id, "quantity": 1}],
        mode="subscription",
        metadata=metadata,
        client_reference_id=str(user.pk),
        customer=customer_id,
        subscription_data={"metadata": {key: str(value) for key, value in metadata.items()}},
    )

    session_id = str(session.get("id") or "")
    log_billing_event(
        message="subscription.checkout_created",
        user_id=user.pk,
        extra={"price_id": price_id, "session_id": session_id},
    )
    return SubscriptionCheckoutResult(
        subscription=subscription,
        checkout_url=session.get("url"),
        session_id=session_id,
    )


def _default_portal_return_url() -> str:
    url = getattr(settings, "BILLING_PORTAL_RETURN_URL", "") or build_public_url("dashboard")
    if not url:
        raise StripeConfigurationError("BILLING_PORTAL_RETURN_URL or BILLING_PUBLIC_BASE_URL must be configured.")
    return url


def create_billing_portal_session(
    *,
    user,
    return_url: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> str:
    """Return the URL of a Stripe customer portal session for ``user``."""

    if not user.stripe_customer_id:
        raise MissingStripeCustomer("No Stripe customer is linked to this account.")

    gateway = gateway or get_stripe_gateway()
    session = gateway.create_billing_portal_session(
        customer=user.stripe_customer_id,
        return_url=return_url or _default_portal_return_url(),
    )
    return str(session.get("url") or "")
