from datetime import timedelta
from unittest.mock import patch

import pytest
from django.db import OperationalError
from django.utils import timezone

from billing.exceptions import IdempotencyConflict, StripeConfigurationError, StripeServiceError
from billing.models import BillingEventDeadLetter, Purchase, WebhookEventLog
from billing.services.credit_ledger import get_credit_balance
from billing.services.price_catalog import CatalogConfigurationError
from billing.tasks import cleanup_webhook_event_logs, hash_event_payload, process_stripe_event_async
from billing.tasks_webhooks import HandlerResult
from billing.tests.fakes import make_event, make_subscription


@pytest.fixture
def purchase(user):
    return Purchase.objects.create(user=user, product="credits_10", stripe_price_id="price_one_time_10")


def _checkout_event(fake_gateway, purchase_id, event_id="evt_checkout"):
    session = fake_gateway.add_checkout(
        session_id="cs_task",
        payment_intent_id="pi_task",
        purchase_id=purchase_id,
        price_id="price_one_time_10",
    )
    return make_event("checkout.session.completed", session, event_id=event_id)


@pytest.mark.django_db
def test_processed_event_is_logged_and_not_reprocessed(user, purchase, patched_gateway):
    event = _checkout_event(patched_gateway, str(purchase.pk))

    first = process_stripe_event_async.run(event)
    second = process_stripe_event_async.run(event)

    log_entry = WebhookEventLog.objects.get(event_id="evt_checkout")
    assert first["status"] == HandlerResult.PROCESSED
    assert second == {"status": "skipped"}
    assert log_entry.status == WebhookEventLog.Status.PROCESSED
    assert log_entry.route == "purchase"
    assert log_entry.handled is True
    assert log_entry.attempts == 1
    assert log_entry.payload_hash == hash_event_payload(event)
    assert get_credit_balance(user) == 10


@pytest.mark.django_db
def test_subscription_event_is_processed(user, patched_gateway):
    patched_gateway.set_subscription(
        "cus_alice", make_subscription(customer_id="cus_alice", price_id="price_pro_monthly")
    )
    event = make_event("customer.subscription.created", {"id": "sub_test_1", "customer": "cus_alice"})

    result = process_stripe_event_async.run(event)

    assert result["status"] == HandlerResult.PROCESSED
    assert get_credit_balance(user) == 10


@pytest.mark.django_db
def test_irrelevant_event_is_ignored(patched_gateway):
    event = make_event("invoice.paid", {"id": "in_1", "customer": "cus_alice"}, event_id="evt_invoice")

    result = process_stripe_event_async.run(event)

    assert result["status"] == HandlerResult.IGNORED
    assert WebhookEventLog.objects.get(event_id="evt_invoice").status == WebhookEventLog.Status.IGNORED
    assert patched_gateway.calls == []


@pytest.mark.django_db
def test_checkout_without_purchase_reference_is_ignored(user, patched_gateway):
    event = _checkout_event(patched_gateway, None)

    result = process_stripe_event_async.run(event)

    assert result["status"] == HandlerResult.IGNORED
    assert not BillingEventDeadLetter.objects.exists()


@pytest.mark.django_db
def test_unknown_customer_is_dead_lettered_and_marked_handled(patched_gateway):
    event = make_event(
        "customer.subscription.updated",
        {"id": "sub_1", "customer": "cus_unknown"},
        event_id="evt_orphan",
    )

    result = process_stripe_event_async.run(event)

    dead_letter = BillingEventDeadLetter.objects.get(event_id="evt_orphan")
    log_entry = WebhookEventLog.objects.get(event_id="evt_orphan")
    assert result["status"] == HandlerResult.DEAD_LETTER
    assert dead_letter.failure_reason == "unknown_customer"
    assert dead_letter.payload == event
    assert log_entry.status == WebhookEventLog.Status.FAILED
    assert log_entry.handled is True


@pytest.mark.django_db
def test_malformed_event_is_dead_lettered(patched_gateway):
    event = make_event("charge.refunded", {"payment_intent": "pi_1"}, event_id="evt_bad")

    result = process_stripe_event_async.run(event)

    assert result["status"] == HandlerResult.DEAD_LETTER
    assert BillingEventDeadLetter.objects.get(event_id="evt_bad").failure_reason == "malformed_event"


@pytest.mark.django_db
def test_provider_failure_is_raised_for_retry(user, purchase, patched_gateway):
    event = _checkout_event(patched_gateway, str(purchase.pk), event_id="evt_retry")
    patched_gateway.fail_with = StripeServiceError("stripe down")

    with pytest.raises(StripeServiceError):
        process_stripe_event_async.run(event)

    log_entry = WebhookEventLog.objects.get(event_id="evt_retry")
    assert log_entry.status == WebhookEventLog.Status.FAILED
    assert log_entry.handled is False
    assert "stripe down" in log_entry.last_error
    assert not BillingEventDeadLetter.objects.exists()

    # A later delivery succeeds once the provider recovers.
    patched_gateway.fail_with = None
    result = process_stripe_event_async.run(event)

    log_entry.refresh_from_db()
    assert result["status"] == HandlerResult.PROCESSED
    assert log_entry.attempts == 2
    assert get_credit_balance(user) == 10


@pytest.mark.django_db
@pytest.mark.parametrize("error", [StripeServiceError("stripe down"), OperationalError("database is locked")])
def test_exhausted_retries_are_dead_lettered(purchase, patched_gateway, error):
    event = _checkout_event(patched_gateway, str(purchase.pk), event_id="evt_exhausted")
    patched_gateway.fail_with = error

    with patch("billing.tasks._retries_exhausted", return_value=True):
        result = process_stripe_event_async.run(event)

    dead_letter = BillingEventDeadLetter.objects.get(event_id="evt_exhausted")
    assert result["status"] == HandlerResult.DEAD_LETTER
    assert dead_letter.failure_reason == "retries_exhausted"
    assert WebhookEventLog.objects.get(event_id="evt_exhausted").handled is False


@pytest.mark.django_db
def test_configuration_error_is_dead_lettered():
    event = make_event("charge.refunded", {"id": "ch_1"}, event_id="evt_config")

    with patch("billing.tasks.dispatch_event", side_effect=StripeConfigurationError("no key")):
        result = process_stripe_event_async.run(event)

    assert result["status"] == HandlerResult.ERROR
    assert BillingEventDeadLetter.objects.get(event_id="evt_config").failure_reason == "configuration_error"


@pytest.mark.django_db
@pytest.mark.parametrize(
    "error",
    [
        IdempotencyConflict("key reused"),
        CatalogConfigurationError("bad price table"),
        ValueError("unexpected payload"),
    ],
)
def test_unexpected_error_is_dead_lettered_and_marked_handled(error):
    event = make_event("charge.refunded", {"id": "ch_1"}, event_id="evt_unexpected")

    with patch("billing.tasks.dispatch_event", side_effect=error):
        result = process_stripe_event_async.run(event)

    log_entry = WebhookEventLog.objects.get(event_id="evt_unexpected")
    dead_letter = BillingEventDeadLetter.objects.get(event_id="evt_unexpected")
    assert result["status"] == HandlerResult.ERROR
    assert log_entry.status == WebhookEventLog.Status.FAILED
    assert log_entry.handled is True
    assert error.__class__.__name__ in log_entry.last_error
    assert dead_letter.failure_reason == "unexpected_error"
    assert dead_letter.payload == event
    # A redelivery is acknowledged without re-running.
    assert process_stripe_event_async.run(event) == {"status": "skipped"}


@pytest.mark.django_db
def test_renewal_in_upgraded_period_is_processed(user, patched_gateway):
    patched_gateway.set_subscription(
        "cus_alice", make_subscription(customer_id="cus_alice", price_id="price_pro_monthly")
    )
    process_stripe_event_async.run(
        make_event("customer.subscription.created", {"id": "sub_test_1", "customer": "cus_alice"})
    )
    patched_gateway.set_subscription(
        "cus_alice", make_subscription(customer_id="cus_alice", price_id="price_business_monthly")
    )
    process_stripe_event_async.run(
        make_event("customer.subscription.updated", {"id": "sub_test_1", "customer": "cus_alice"})
    )

    result = process_stripe_event_async.run(
        make_event(
            "invoice.payment_succeeded",
            {"id": "in_1", "customer": "cus_alice", "subscription": "sub_test_1"},
            event_id="evt_renewal",
        )
    )

    assert result["status"] == HandlerResult.PROCESSED
    assert WebhookEventLog.objects.get(event_id="evt_renewal").status == WebhookEventLog.Status.PROCESSED
    assert not BillingEventDeadLetter.objects.exists()
    assert get_credit_balance(user) == 30


@pytest.mark.django_db
def test_force_reprocesses_handled_event(user, patched_gateway):
    event = make_event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_alice"})
    patched_gateway.set_subscription("cus_alice", None)
    process_stripe_event_async.run(event)

    patched_gateway.set_subscription(
        "cus_alice", make_subscription(customer_id="cus_alice", price_id="price_pro_monthly")
    )
    result = process_stripe_event_async.run(event, force=True)

    assert result["status"] == HandlerResult.PROCESSED
    assert WebhookEventLog.objects.get(event_id=event["id"]).attempts == 2
    assert get_credit_balance(user) == 10


@pytest.mark.django_db
def test_cleanup_removes_only_old_handled_entries():
    old = timezone.now() - timedelta(days=10)
    WebhookEventLog.objects.create(
        event_id="evt_old", status=WebhookEventLog.Status.PROCESSED, handled=True, processed_at=old
    )
    WebhookEventLog.objects.create(
        event_id="evt_old_failed", status=WebhookEventLog.Status.FAILED, handled=True, processed_at=old
    )
    WebhookEventLog.objects.create(
        event_id="evt_recent", status=WebhookEventLog.Status.IGNORED, handled=True, processed_at=timezone.now()
    )

    deleted = cleanup_webhook_event_logs(days=7)

    assert deleted == 1
    assert set(WebhookEventLog.objects.values_list("event_id", flat=True)) == {"evt_old_failed", "evt_recent"}
