"""Thin Stripe client used by the reconcilers.

Every call returns plain dictionaries and every Stripe error is re-raised as
:class:`StripeServiceError`, so callers never depend on SDK object types.
Reconcilers receive a gateway instance, which lets tests substitute an
in-memory double.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import stripe
from django.conf import settings

from billing.exceptions import InvalidSignature, StripeConfigurationError, StripeServiceError

logger = logging.getLogger(__name__)

SUBSCRIPTION_EXPANSIONS = ("data.default_payment_method", "data.items.data.price")


def _configure_stripe() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version


def _to_dict(obj: Any) -> Optional[Dict[str, Any]]:
    if obj is None:
        return None
    if type(obj) is dict:
        return obj
    for converter_name in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, converter_name, None)
        if callable(converter):
            return converter()
    return dict(obj)


def _stringify_metadata(values: Dict[str, Any]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in values.items()}


class StripeGateway:
    """Stripe operations needed by checkout creation and webhook reconciliation."""

    def __init__(self, *, webhook_secret: Optional[str] = None):
        self._webhook_secret = webhook_secret

    @property
    def webhook_secret(self) -> str:
        return self._webhook_secret or getattr(settings, "STRIPE_WEBHOOK_SECRET", "")

    def construct_event(self, payload: Union[bytes, str], sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return the event as a dictionary."""

        if not sig_header:
            raise InvalidSignature("Stripe-Signature header is missing.")
        if not payload:
            raise InvalidSignature("Stripe webhook body is empty.")

        secret = self.webhook_secret
        if not secret:
            raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured.")

        try:
            event = stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise InvalidSignature("Stripe webhook signature verification failed.") from exc
        except ValueError as exc:
            logger.error("Received malformed Stripe webhook payload: %s", exc)
            raise InvalidSignature("Malformed Stripe webhook payload.") from exc

        return _to_dict(event)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        if not payment_intent_id:
            raise ValueError("payment_intent_id is required.")

        _configure_stripe()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as exc:
            logger.warning("Failed to retrieve Stripe payment intent %s: %s", payment_intent_id, exc)
            raise StripeServiceError(str(exc)) from exc
        return _to_dict(intent)

    def find_checkout_session_for_payment_intent(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        """Return the checkout session that created ``payment_intent_id``, if any."""

        if not payment_intent_id:
            return None

        _configure_stripe()
        try:
            sessions = stripe.checkout.Session.list(payment_intent=payment_intent_id, limit=1)
        except stripe.StripeError as exc:
            logger.warning("Failed to list checkout sessions for %s: %s", payment_intent_id, exc)
            raise StripeServiceError(str(exc)) from exc

        data = (_to_dict(sessions) or {}).get("data") or []
        return data[0] if data else None

    def list_line_items(self, session_id: str, *, limit: int = 10) -> List[Dict[str, Any]]:
        if not session_id:
            raise ValueError("session_id is required.")

        _configure_stripe()
        try:
            items = stripe.checkout.Session.list_line_items(session_id, limit=limit)
        except stripe.StripeError as exc:
            logger.warning("Failed to list line items for checkout session %s: %s", session_id, exc)
            raise StripeServiceError(str(exc)) from exc
        return list((_to_dict(items) or {}).get("data") or [])

    def list_customer_subscriptions(
        self,
        customer_id: str,
        *,
        limit: int = 1,
        expand: Iterable[str] = SUBSCRIPTION_EXPANSIONS,
    ) -> List[Dict[str, Any]]:
        """List a customer's subscriptions in any status, newest first."""

        if not customer_id:
            raise ValueError("customer_id is required.")

        _configure_stripe()
        try:
            subscriptions = stripe.Subscription.list(
                customer=customer_id,
                status="all",
                limit=limit,
                expand=list(expand),
            )
        except stripe.StripeError as exc:
            logger.warning("Failed to list Stripe subscriptions for %s: %s", customer_id, exc)
            raise StripeServiceError(str(exc)) from exc
        return list((_to_dict(subscriptions) or {}).get("data") or [])

    def create_checkout_session(
        self,
        *,
        success_url: str,
        cancel_url: str,
        line_items: Iterable[Dict[str, Any]],
        mode: str = "payment",
        metadata: Optional[Dict[str, Any]] = None,
        client_reference_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer: Optional[str] = None,
        payment_intent_data: Optional[Dict[str, Any]] = None,
        subscription_data: Optional[Dict[str, Any]] = None,
        allow_promotion_codes: bool = False,
    ) -> Dict[str, Any]:
        """Wrapper around ``stripe.checkout.Session.create`` with consistent error handling."""

        _configure_stripe()

        options: Dict[str, Any] = {
            "success_url": success_url,
            "cancel_url": cancel_url,
            "mode": mode,
            "line_items": list(line_items),
        }

        if metadata:
            options["metadata"] = _stringify_metadata(metadata)
        if client_reference_id:
            options["client_reference_id"] = str(client_reference_id)
        if customer:
            options["customer"] = customer
        elif customer_email:
            options["customer_email"] = customer_email
        if payment_intent_data:
            options["payment_intent_data"] = payment_intent_data
        if subscription_data:
            options["subscription_data"] = subscription_data
        if allow_promotion_codes:
            options["allow_promotion_codes"] = True

        try:
            session = stripe.checkout.Session.create(**options)
        except stripe.StripeError as exc:
            logger.warning("Stripe checkout session creation failed: %s", exc)
            raise StripeServiceError(str(exc)) from exc

        return _to_dict(session)

    def create_customer(
        self,
        *,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        _configure_stripe()

        options: Dict[str, Any] = {"email": email}
        if name:
            options["name"] = name
        if metadata:
            options["metadata"] = _stringify_metadata(metadata)

        try:
            customer = stripe.Customer.create(**options)
        except stripe.StripeError as exc:
            logger.warning("Stripe customer creation failed for %s: %s", email, exc)
            raise StripeServiceError(str(exc)) from exc
        return _to_dict(customer)

    def create_billing_portal_session(self, *, customer: str, return_url: str) -> Dict[str, Any]:
        """Open a customer portal session where the user manages their subscription."""

        if not customer:
            raise ValueError("customer is required.")

        _configure_stripe()
        try:
            session = stripe.billing_portal.Session.create(customer=customer, return_url=return_url)
        except stripe.StripeError as exc:
            logger.warning("Stripe billing portal session failed for %s: %s", customer, exc)
            raise StripeServiceError(str(exc)) from exc
        return _to_dict(session)


_default_gateway: Optional[StripeGateway] = None


def get_stripe_gateway() -> StripeGateway:
    global _default_gateway

    if _default_gateway is None:
        _default_gateway = StripeGateway()
    return _default_gateway
