"""Purchase creation and user-initiated purchase actions."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction

from billing.exceptions import (
    PurchaseNotFound,
    PurchaseStateError,
    StripeConfigurationError,
    StripeServiceError,
)
from billing.models import Purchase
from billing.observability.logging import log_billing_event
from billing.services.purchase_reconciler import PURCHASE_ID_METADATA_KEY
from billing.services.stripe_gateway import StripeGateway, get_stripe_gateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    purchase: Purchase
    checkout_url: Optional[str]
    session_id: str


def build_public_url(path: str) -> str:
    base_url = getattr(settings, "BILLING_PUBLIC_BASE_URL", "")
    if not base_url:
        return ""
    normalized_base = base_url if base_url.endswith("/") else f"{base_url}/"
    return urljoin(normalized_base, path.lstrip("/"))


def default_success_url() -> str:
    url = getattr(settings, "STRIPE_SUCCESS_URL", "") or build_public_url("purchase/success")
    if not url:
        raise StripeConfigurationError("STRIPE_SUCCESS_URL or BILLING_PUBLIC_BASE_URL must be configured.")
    return url


def default_cancel_url() -> str:
    url = getattr(settings, "STRIPE_CANCEL_URL", "") or build_public_url("purchase/cancel")
    if not url:
        raise StripeConfigurationError("STRIPE_CANCEL_URL or BILLING_PUBLIC_BASE_URL must be configured.")
    return url


def append_checkout_params(url: str, params: Dict[str, Any], *, include_session: bool = False) -> str:
    """Append query parameters to success/cancel URLs, preserving existing values."""

    split_url = urlsplit(url)
    existing_params = dict(parse_qsl(split_url.query, keep_blank_values=True))

    for key, value in params.items():
        if value in (None, ""):
            continue
        existing_params[key] = str(value)

    query = urlencode(existing_params, doseq=True)
    # Stripe substitutes the literal placeholder, so it must not be URL-encoded.
    if include_session and "session_id" not in existing_params:
        fragment = "session_id={CHECKOUT_SESSION_ID}"
        query = f"{query}&{fragment}" if query else fragment

    return urlunsplit((split_url.scheme, split_url.netloc, split_url.path, query, split_url.fragment))


def create_purchase_checkout(
    *,
    user,
    product: str,
    price_id: str,
    amount: Decimal = Decimal("0.00"),
    currency: Optional[str] = None,
    description: str = "",
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    gateway: Optional[StripeGateway] = None,
) -> CheckoutResult:
    """Create a PENDING purchase and the Stripe checkout session that pays for it.

    The purchase id travels in the session metadata; it is the only link the
    webhook reconciler has back to this row.
    """

    gateway = gateway or get_stripe_gateway()
    resolved_success = append_checkout_params(
        success_url or default_success_url(), {"product": product}, include_session=True
    )
    resolved_cancel = append_checkout_params(cancel_url or default_cancel_url(), {"product": product})

    purchase = Purchase.objects.create(
        user=user,
        product=product,
        amount=amount,
        currency=(currency or getattr(settings, "STRIPE_CURRENCY", "usd")).lower(),
        description=description or "",
        status=Purchase.Status.PENDING,
        stripe_price_id=price_id,
    )

    metadata = {PURCHASE_ID_METADATA_KEY: str(purchase.pk), "priceId": price_id}
    try:
        session = gateway.create_checkout_session(
            success_url=resolved_success,
            cancel_url=resolved_cancel,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="payment",
            metadata=metadata,
            client_reference_id=str(purchase.pk),
            customer=getattr(user, "stripe_customer_id", None) or None,
            customer_email=getattr(user, "email", None) or None,
            payment_intent_data={"metadata": metadata},
            allow_promotion_codes=True,
        )
    except StripeServiceError:
        purchase.status = Purchase.Status.FAILED
        purchase.save(update_fields=["status", "updated_at"])
        raise

    session_id = str(session.get("id") or "")
    purchase.stripe_session_id = session_id or None
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, str):
        purchase.stripe_payment_intent_id = payment_intent
    purchase.metadata = {PURCHASE_ID_METADATA_KEY: str(purchase.pk)}
    purchase.save(update_fields=["stripe_session_id", "stripe_payment_intent_id", "metadata", "updated_at"])

    log_billing_event(
        message="purchase.checkout_created",
        user_id=user.pk,
        extra={"purchase_id": str(purchase.pk), "product": product, "price_id": price_id},
    )

    return CheckoutResult(purchase=purchase, checkout_url=session.get("url"), session_id=session_id)


def get_purchase_for_user(user, purchase_id) -> Purchase:
    """Return a purchase visible to ``user``: their own, or any purchase for staff."""

    try:
        purchase = Purchase.objects.select_related("user").filter(pk=purchase_id).first()
    except (ValidationError, ValueError):
        purchase = None

    if purchase is None or (purchase.user_id != user.pk and not user.is_staff):
        raise PurchaseNotFound("Purchase not found.")
    return purchase


def cancel_pending_purchase(*, user, purchase_id) -> Purchase:
    """Mark a still-PENDING purchase as FAILED on behalf of its owner."""

    purchase = get_purchase_for_user(user, purchase_id)

    with transaction.atomic():
        locked = Purchase.objects.select_for_update().get(pk=purchase.pk)
        if locked.status != Purchase.Status.PENDING:
            raise PurchaseStateError("Only pending purchases can be canceled.")
        locked.status = Purchase.Status.FAILED
        locked.save(update_fields=["status", "updated_at"])

    log_billing_event(
        message="purchase.canceled",
        user_id=user.pk,
        actor="user" if locked.user_id == user.pk else "staff",
        extra={"purchase_id": str(locked.pk)},
    )
    return locked
