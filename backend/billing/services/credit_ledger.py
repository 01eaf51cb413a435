"""User credit ledger with idempotent, cause-keyed mutations.

``User.credits`` is a denormalised counter; every change to it goes through
:func:`apply_credit_delta`, which records a :class:`CreditTransaction` in the
same database transaction as the counter update.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import F

from billing.exceptions import IdempotencyConflict, InsufficientCredits
from billing.models import CreditTransaction, Purchase
from billing.observability.metrics import CREDIT_MUTATION_AMOUNT, CREDIT_MUTATION_COUNT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditLedgerResult:
    transaction: CreditTransaction
    created: bool
    delta: int
    balance: int


def purchase_grant_key(purchase_id) -> str:
    return f"purchase:{purchase_id}:grant"


def purchase_revoke_key(purchase_id) -> str:
    return f"purchase:{purchase_id}:revoke"


def subscription_cycle_key(subscription_id: str, period_start: Optional[int]) -> str:
    return f"subscription:{subscription_id}:cycle:{period_start or 0}"


def subscription_upgrade_key(subscription_id: str, old_price_id: str, new_price_id: str,
                             period_start: Optional[int]) -> str:
    return f"subscription:{subscription_id}:upgrade:{old_price_id}:{new_price_id}:{period_start or 0}"


def apply_credit_delta(
    *,
    user,
    amount: int,
    kind: str,
    idempotency_key: Optional[str] = None,
    purchase: Optional[Purchase] = None,
    stripe_event_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    description: str = "",
    metadata: Optional[dict] = None,
) -> CreditLedgerResult:
    """Add ``amount`` (signed) to the user's credits exactly once per ``idempotency_key``.

    Opens a transaction, or joins the caller's, so the ledger row and the
    counter update commit together with whatever state change caused them.
    """

    if user is None:
        raise ValueError("user is required.")
    amount = int(amount)
    if amount == 0:
        raise ValueError("Credit delta must be non-zero.")
    if kind not in CreditTransaction.Kind.values:
        raise ValueError(f"Unknown credit transaction kind '{kind}'.")

    User = get_user_model()

    with transaction.atomic():
        if idempotency_key:
            existing = CreditTransaction.objects.filter(idempotency_key=idempotency_key).first()
            if existing:
                _validate_idempotent(existing, user.pk, amount)
                balance = User.objects.filter(pk=user.pk).values_list("credits", flat=True).get()
                logger.info("Credit mutation %s already applied; skipping.", idempotency_key)
                return CreditLedgerResult(transaction=existing, created=False, delta=existing.amount, balance=balance)

        User.objects.filter(pk=user.pk).update(credits=F("credits") + amount)
        balance = User.objects.filter(pk=user.pk).values_list("credits", flat=True).get()

        transaction_record = CreditTransaction.objects.create(
            user_id=user.pk,
            amount=amount,
            kind=kind,
            purchase=purchase,
            stripe_event_id=stripe_event_id,
            stripe_subscription_id=stripe_subscription_id,
            idempotency_key=idempotency_key,
            description=description or "",
            metadata=metadata or {},
            balance_after=balance,
        )

    user.credits = balance
    CREDIT_MUTATION_COUNT.labels(kind=kind).inc()
    CREDIT_MUTATION_AMOUNT.labels(kind=kind).inc(abs(amount))
    logger.info("Applied %+d credits (%s) to user %s; balance=%s.", amount, kind, user.pk, balance)

    return CreditLedgerResult(transaction=transaction_record, created=True, delta=amount, balance=balance)


def consume_credits(
    *,
    user,
    amount: int,
    description: str = "",
    idempotency_key: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> CreditLedgerResult:
    """Debit ``amount`` credits for usage, refusing to overdraw the balance."""

    amount = int(amount)
    if amount <= 0:
        raise ValueError("Consumption amount must be positive.")

    User = get_user_model()

    with transaction.atomic():
        locked_user = User.objects.select_for_update().get(pk=user.pk)

        if idempotency_key:
            existing = CreditTransaction.objects.filter(idempotency_key=idempotency_key).first()
            if existing:
                _validate_idempotent(existing, locked_user.pk, -amount)
                return CreditLedgerResult(
                    transaction=existing,
                    created=False,
                    delta=existing.amount,
                    balance=locked_user.credits,
                )

        if locked_user.credits < amount:
            raise InsufficientCredits(available=locked_user.credits, requested=amount)

        result = apply_credit_delta(
            user=locked_user,
            amount=-amount,
            kind=CreditTransaction.Kind.CONSUMPTION,
            idempotency_key=idempotency_key,
            description=description or "Credit consumption",
            metadata=metadata,
        )

    user.credits = result.balance
    return result


def get_credit_balance(user) -> int:
    User = get_user_model()
    return User.objects.filter(pk=user.pk).values_list("credits", flat=True).get()


def granted_purchase_credits(purchase: Purchase) -> Optional[int]:
    """Return the credits actually granted for ``purchase``, if a grant was recorded."""

    grant = CreditTransaction.objects.filter(idempotency_key=purchase_grant_key(purchase.pk)).first()
    return grant.amount if grant else None


def _validate_idempotent(transaction_record: CreditTransaction, user_id, amount: int) -> None:
    if transaction_record.user_id != user_id:
        raise IdempotencyConflict("Idempotency key belongs to a different user.")
    if transaction_record.amount != amount:
        raise IdempotencyConflict("Existing transaction amount mismatch for idempotent request.")
