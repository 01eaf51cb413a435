import pytest
from django.db import IntegrityError, transaction

from billing.exceptions import IdempotencyConflict, InsufficientCredits
from billing.models import CreditTransaction
from billing.services.credit_ledger import (
    apply_credit_delta,
    consume_credits,
    get_credit_balance,
    purchase_grant_key,
    subscription_cycle_key,
    subscription_upgrade_key,
)


def test_idempotency_keys_are_deterministic():
    assert purchase_grant_key("p1") == "purchase:p1:grant"
    assert subscription_cycle_key("sub_1", 1700000000) == "subscription:sub_1:cycle:1700000000"
    assert (
        subscription_upgrade_key("sub_1", "price_a", "price_b", 1700000000)
        == "subscription:sub_1:upgrade:price_a:price_b:1700000000"
    )


@pytest.mark.django_db
def test_apply_credit_delta_updates_balance_and_records_transaction(user):
    result = apply_credit_delta(
        user=user,
        amount=25,
        kind=CreditTransaction.Kind.PURCHASE_GRANT,
        idempotency_key="purchase:test:grant",
    )

    assert result.created is True
    assert result.balance == 25
    assert user.credits == 25
    assert get_credit_balance(user) == 25
    assert result.transaction.balance_after == 25
    assert CreditTransaction.objects.filter(user=user).count() == 1


@pytest.mark.django_db
def test_apply_credit_delta_is_idempotent_per_key(user):
    apply_credit_delta(user=user, amount=10, kind=CreditTransaction.Kind.SUBSCRIPTION_CYCLE, idempotency_key="k1")
    replay = apply_credit_delta(
        user=user,
        amount=10,
        kind=CreditTransaction.Kind.SUBSCRIPTION_CYCLE,
        idempotency_key="k1",
    )

    assert replay.created is False
    assert replay.balance == 10
    assert CreditTransaction.objects.filter(idempotency_key="k1").count() == 1


@pytest.mark.django_db
def test_apply_credit_delta_rejects_key_reuse_with_different_amount(user):
    apply_credit_delta(user=user, amount=10, kind=CreditTransaction.Kind.PURCHASE_GRANT, idempotency_key="k2")

    with pytest.raises(IdempotencyConflict):
        apply_credit_delta(user=user, amount=11, kind=CreditTransaction.Kind.PURCHASE_GRANT, idempotency_key="k2")

    assert get_credit_balance(user) == 10


@pytest.mark.django_db
def test_apply_credit_delta_rejects_key_owned_by_another_user(user, other_user):
    apply_credit_delta(user=user, amount=5, kind=CreditTransaction.Kind.PURCHASE_GRANT, idempotency_key="k3")

    with pytest.raises(IdempotencyConflict):
        apply_credit_delta(user=other_user, amount=5, kind=CreditTransaction.Kind.PURCHASE_GRANT, idempotency_key="k3")


@pytest.mark.django_db
@pytest.mark.parametrize("amount,kind", [(0, CreditTransaction.Kind.PURCHASE_GRANT), (5, "bonus")])
def test_apply_credit_delta_validates_input(user, amount, kind):
    with pytest.raises(ValueError):
        apply_credit_delta(user=user, amount=amount, kind=kind)

    assert not CreditTransaction.objects.exists()


@pytest.mark.django_db
def test_revocation_may_leave_negative_balance(user):
    apply_credit_delta(user=user, amount=10, kind=CreditTransaction.Kind.PURCHASE_GRANT)
    consume_credits(user=user, amount=8)

    result = apply_credit_delta(user=user, amount=-10, kind=CreditTransaction.Kind.PURCHASE_REVOKE)

    assert result.balance == -8


@pytest.mark.django_db
def test_consume_credits_refuses_to_overdraw(user):
    apply_credit_delta(user=user, amount=3, kind=CreditTransaction.Kind.PURCHASE_GRANT)

    with pytest.raises(InsufficientCredits) as exc:
        consume_credits(user=user, amount=5)

    assert exc.value.available == 3
    assert exc.value.requested == 5
    assert get_credit_balance(user) == 3
    assert not CreditTransaction.objects.filter(kind=CreditTransaction.Kind.CONSUMPTION).exists()


@pytest.mark.django_db
def test_consume_credits_with_key_applies_once(user):
    apply_credit_delta(user=user, amount=10, kind=CreditTransaction.Kind.PURCHASE_GRANT)

    first = consume_credits(user=user, amount=4, idempotency_key="consume:1:job-1")
    second = consume_credits(user=user, amount=4, idempotency_key="consume:1:job-1")

    assert first.created is True
    assert second.created is False
    assert second.transaction.pk == first.transaction.pk
    assert get_credit_balance(user) == 6
    assert user.credits == 6


@pytest.mark.django_db
def test_balance_matches_sum_of_transactions(user):
    apply_credit_delta(user=user, amount=60, kind=CreditTransaction.Kind.PURCHASE_GRANT)
    apply_credit_delta(user=user, amount=10, kind=CreditTransaction.Kind.SUBSCRIPTION_CYCLE)
    consume_credits(user=user, amount=15)
    apply_credit_delta(user=user, amount=-60, kind=CreditTransaction.Kind.PURCHASE_REVOKE)

    total = sum(CreditTransaction.objects.filter(user=user).values_list("amount", flat=True))
    assert get_credit_balance(user) == total == -5


@pytest.mark.django_db
def test_database_rejects_zero_amount_rows(user):
    with pytest.raises(IntegrityError), transaction.atomic():
        CreditTransaction.objects.create(user=user, amount=0, kind=CreditTransaction.Kind.CONSUMPTION)

    assert not CreditTransaction.objects.exists()
