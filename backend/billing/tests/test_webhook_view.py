import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
from django.urls import reverse
from kombu.exceptions import OperationalError as BrokerError
from rest_framework.test import APIClient

from billing.models import WebhookEventLog
from billing.tests.fakes import make_event

WEBHOOK_SECRET = "whsec_test_billing"


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed_payload = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _post(payload: str, signature=None):
    headers = {}
    if signature is not None:
        headers["HTTP_STRIPE_SIGNATURE"] = signature
    return APIClient().post(
        reverse("billing:stripe-webhook"),
        data=payload,
        content_type="application/json",
        **headers,
    )


@pytest.fixture
def event_payload():
    event = make_event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_alice"}, event_id="evt_hook")
    return json.dumps(event)


@pytest.fixture
def task_mock():
    with patch("billing.views_webhook.process_stripe_event_async") as mocked:
        yield mocked


@pytest.mark.django_db
def test_valid_delivery_is_recorded_and_enqueued(event_payload, task_mock):
    response = _post(event_payload, _sign(event_payload))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    task_mock.delay.assert_called_once()
    queued = task_mock.delay.call_args.args[0]
    assert queued["id"] == "evt_hook"
    assert queued["data"]["object"]["customer"] == "cus_alice"
    log_entry = WebhookEventLog.objects.get(event_id="evt_hook")
    assert log_entry.status == WebhookEventLog.Status.RECEIVED
    assert log_entry.handled is False


@pytest.mark.django_db
@pytest.mark.parametrize(
    "signature",
    [None, "t=1,v1=deadbeef", "garbage"],
)
def test_unverifiable_delivery_is_rejected(event_payload, task_mock, signature):
    response = _post(event_payload, signature)

    assert response.status_code == 400
    task_mock.delay.assert_not_called()
    assert not WebhookEventLog.objects.exists()


@pytest.mark.django_db
def test_delivery_signed_with_another_secret_is_rejected(event_payload, task_mock):
    response = _post(event_payload, _sign(event_payload, secret="whsec_other"))

    assert response.status_code == 400
    task_mock.delay.assert_not_called()


@pytest.mark.django_db
def test_tampered_body_is_rejected(event_payload, task_mock):
    signature = _sign(event_payload)
    tampered = event_payload.replace("cus_alice", "cus_mallory")

    response = _post(tampered, signature)

    assert response.status_code == 400


@pytest.mark.django_db
def test_missing_webhook_secret_returns_server_error(event_payload, task_mock, settings):
    settings.STRIPE_WEBHOOK_SECRET = ""

    response = _post(event_payload, _sign(event_payload))

    assert response.status_code == 500
    task_mock.delay.assert_not_called()


@pytest.mark.django_db
def test_already_handled_event_is_acknowledged_without_enqueue(event_payload, task_mock):
    WebhookEventLog.objects.create(
        event_id="evt_hook",
        event_type="customer.subscription.updated",
        status=WebhookEventLog.Status.PROCESSED,
        handled=True,
    )

    response = _post(event_payload, _sign(event_payload))

    assert response.status_code == 200
    task_mock.delay.assert_not_called()


@pytest.mark.django_db
def test_unhandled_redelivery_is_enqueued_again(event_payload, task_mock):
    WebhookEventLog.objects.create(
        event_id="evt_hook",
        status=WebhookEventLog.Status.FAILED,
        last_error="stripe down",
    )

    response = _post(event_payload, _sign(event_payload))

    assert response.status_code == 200
    task_mock.delay.assert_called_once()
    log_entry = WebhookEventLog.objects.get(event_id="evt_hook")
    assert log_entry.status == WebhookEventLog.Status.RECEIVED
    assert log_entry.last_error == ""


@pytest.mark.django_db
def test_broker_outage_asks_stripe_to_redeliver(event_payload, task_mock):
    task_mock.delay.side_effect = BrokerError("broker unreachable")

    response = _post(event_payload, _sign(event_payload))

    assert response.status_code == 503


@pytest.mark.django_db
def test_end_to_end_delivery_runs_reconciliation(user, patched_gateway):
    patched_gateway.set_subscription("cus_alice", None)
    event = make_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_alice"}, event_id="evt_e2e")
    payload = json.dumps(event)

    # Celery runs eagerly under the test settings.
    response = _post(payload, _sign(payload))

    log_entry = WebhookEventLog.objects.get(event_id="evt_e2e")
    assert response.status_code == 200
    assert log_entry.status == WebhookEventLog.Status.PROCESSED
    assert log_entry.handled is True
    assert user.subscription.status == "none"
