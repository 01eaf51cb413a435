from unittest.mock import patch

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from billing.tests.fakes import FakeStripeGateway


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        username="alice",
        email="alice@example.com",
        password="pass1234",
        first_name="Alice",
        stripe_customer_id="cus_alice",
    )


@pytest.fixture
def other_user(db):
    return get_user_model().objects.create_user(
        username="bob",
        email="bob@example.com",
        password="pass1234",
        stripe_customer_id="cus_bob",
    )


@pytest.fixture
def api_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def fake_gateway():
    return FakeStripeGateway()


@pytest.fixture
def patched_gateway(fake_gateway):
    """Route every module-level gateway lookup to the in-memory fake."""

    targets = (
        "billing.services.purchase_reconciler.get_stripe_gateway",
        "billing.services.subscription_sync.get_stripe_gateway",
        "billing.services.purchases.get_stripe_gateway",
        "billing.services.subscriptions.get_stripe_gateway",
    )
    patchers = [patch(target, return_value=fake_gateway) for target in targets]
    for patcher in patchers:
        patcher.start()
    yield fake_gateway
    for patcher in patchers:
        patcher.stop()
