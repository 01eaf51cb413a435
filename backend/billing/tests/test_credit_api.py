import pytest
from django.urls import reverse

from billing.models import CreditTransaction, Subscription
from billing.services.credit_ledger import apply_credit_delta, get_credit_balance


@pytest.fixture
def funded_user(user):
    apply_credit_delta(user=user, amount=20, kind=CreditTransaction.Kind.PURCHASE_GRANT)
    return user


@pytest.mark.django_db
def test_balance_includes_subscription_summary(funded_user, api_client):
    Subscription.objects.create(
        user=funded_user,
        stripe_customer_id="cus_alice",
        stripe_price_id="price_pro_monthly",
        status="active",
        interval="month",
    )

    response = api_client.get(reverse("billing:credit-balance"))

    assert response.status_code == 200
    payload = response.json()
    assert payload["credits"] == 20
    assert payload["subscription"]["status"] == "active"
    assert payload["subscription"]["stripe_price_id"] == "price_pro_monthly"


@pytest.mark.django_db
def test_balance_without_subscription(user, api_client):
    response = api_client.get(reverse("billing:credit-balance"))

    assert response.json() == {"credits": 0, "subscription": None}


@pytest.mark.django_db
def test_consume_debits_balance(funded_user, api_client):
    response = api_client.post(
        reverse("billing:credit-consume"),
        {"amount": 5, "description": "Variation batch"},
        format="json",
    )

    assert response.status_code == 200
    assert response.json()["credits"] == 15
    assert response.json()["replayed"] is False
    assert get_credit_balance(funded_user) == 15


@pytest.mark.django_db
def test_consume_with_idempotency_key_debits_once(funded_user, api_client):
    body = {"amount": 5, "idempotency_key": "job-42"}

    first = api_client.post(reverse("billing:credit-consume"), body, format="json")
    second = api_client.post(reverse("billing:credit-consume"), body, format="json")

    assert first.json()["transaction_id"] == second.json()["transaction_id"]
    assert second.json()["replayed"] is True
    assert get_credit_balance(funded_user) == 15
    tx = CreditTransaction.objects.get(kind=CreditTransaction.Kind.CONSUMPTION)
    assert tx.idempotency_key == f"consume:{funded_user.pk}:job-42"


@pytest.mark.django_db
def test_consume_key_reused_with_different_amount_conflicts(funded_user, api_client):
    api_client.post(reverse("billing:credit-consume"), {"amount": 5, "idempotency_key": "job-7"}, format="json")

    response = api_client.post(
        reverse("billing:credit-consume"), {"amount": 6, "idempotency_key": "job-7"}, format="json"
    )

    assert response.status_code == 409
    assert get_credit_balance(funded_user) == 15


@pytest.mark.django_db
def test_consume_more_than_balance_is_refused(funded_user, api_client):
    response = api_client.post(reverse("billing:credit-consume"), {"amount": 21}, format="json")

    assert response.status_code == 402
    assert response.json()["credits"] == 20
    assert get_credit_balance(funded_user) == 20


@pytest.mark.django_db
@pytest.mark.parametrize("amount", [0, -3, 10_001, "many"])
def test_consume_validates_amount(funded_user, api_client, amount):
    response = api_client.post(reverse("billing:credit-consume"), {"amount": amount}, format="json")

    assert response.status_code == 400


@pytest.mark.django_db
def test_transactions_list_is_scoped_and_filterable(funded_user, other_user, api_client):
    apply_credit_delta(user=other_user, amount=7, kind=CreditTransaction.Kind.PURCHASE_GRANT)
    api_client.post(reverse("billing:credit-consume"), {"amount": 2}, format="json")

    everything = api_client.get(reverse("billing:credit-transactions")).json()
    consumption = api_client.get(reverse("billing:credit-transactions"), {"kind": "consumption"}).json()

    assert everything["count"] == 2
    assert consumption["count"] == 1
    assert consumption["results"][0]["amount"] == -2
    assert consumption["results"][0]["balance_after"] == 18
