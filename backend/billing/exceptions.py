"""Exceptions raised across the billing reconciliation pipeline."""
from __future__ import annotations

from typing import Any, Dict, Optional

from django.db import IntegrityError, OperationalError


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


class StripeServiceError(RuntimeError):
    """Raised when Stripe returns an operational error."""


# Provider reads that fail abort reconciliation before any write happens.
ProviderQueryFailure = StripeServiceError


class InvalidSignature(StripeServiceError):
    """Raised when a webhook body or its signature cannot be verified."""


class UnattributableEvent(Exception):
    """Raised when an event cannot be tied to a local purchase or user."""

    def __init__(self, reason: str, detail: str = "", *, context: Optional[Dict[str, Any]] = None):
        self.reason = reason
        self.detail = detail or reason
        self.context = context or {}
        super().__init__(self.detail)


class MalformedEvent(UnattributableEvent):
    """Raised when an event payload is missing a required identifier."""

    def __init__(self, detail: str, *, context: Optional[Dict[str, Any]] = None):
        super().__init__("malformed_event", detail, context=context)


# Database failures inside ``transaction.atomic()``; the whole unit rolls back and is retried.
TRANSACTION_FAILURES = (OperationalError, IntegrityError)


class CreditLedgerError(Exception):
    """Base exception for credit ledger operations."""


class InsufficientCredits(CreditLedgerError):
    """Raised when a consumption would take the balance below zero."""

    def __init__(self, *, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient credits: requested {requested}, available {available}.")


class IdempotencyConflict(CreditLedgerError):
    """Raised when an idempotency key collides with different mutation semantic."""


class PurchaseError(Exception):
    """Base exception for purchase service operations."""


class PurchaseNotFound(PurchaseError):
    """Raised when the requested purchase does not exist."""


class PurchaseStateError(PurchaseError):
    """Raised when a purchase is not in a state that allows the requested action."""


class SubscriptionError(Exception):
    """Base exception for subscription checkout and portal operations."""


class SubscriptionAlreadyActive(SubscriptionError):
    """Raised when the customer already has an active subscription to the price."""


class MissingStripeCustomer(SubscriptionError):
    """Raised when a portal session is requested for a user with no Stripe customer."""
