import uuid

import pytest
from django.core.management import CommandError, call_command

from billing.models import BillingEventDeadLetter, Purchase
from billing.services.credit_ledger import get_credit_balance
from billing.tasks import process_stripe_event_async
from billing.tests.fakes import make_event, make_subscription


def _dead_letter_unknown_customer(event_id="evt_dead"):
    event = make_event(
        "customer.subscription.created",
        {"id": "sub_test_1", "customer": "cus_late"},
        event_id=event_id,
    )
    process_stripe_event_async.run(event)
    return BillingEventDeadLetter.objects.get(event_id=event_id)


@pytest.mark.django_db
def test_replay_processes_dead_letter_once_customer_is_known(user, patched_gateway):
    dead_letter = _dead_letter_unknown_customer()
    assert dead_letter.failure_reason == "unknown_customer"

    user.stripe_customer_id = "cus_late"
    user.save(update_fields=["stripe_customer_id"])
    patched_gateway.set_subscription("cus_late", make_subscription(customer_id="cus_late", price_id="price_pro_monthly"))

    call_command("replay_billing_deadletter")

    assert not BillingEventDeadLetter.objects.exists()
    assert get_credit_balance(user) == 10


@pytest.mark.django_db
def test_replay_of_unknown_purchase_after_it_appears(user, patched_gateway):
    purchase_id = uuid.uuid4()
    session = patched_gateway.add_checkout(
        session_id="cs_late",
        payment_intent_id="pi_late",
        purchase_id=str(purchase_id),
        price_id="price_one_time_10",
    )
    process_stripe_event_async.run(make_event("checkout.session.completed", session, event_id="evt_purchase"))
    assert BillingEventDeadLetter.objects.get(event_id="evt_purchase").failure_reason == "unknown_purchase"

    Purchase.objects.create(id=purchase_id, user=user, product="credits_10", stripe_price_id="price_one_time_10")

    call_command("replay_billing_deadletter", event_ids=["evt_purchase"])

    assert Purchase.objects.get(pk=purchase_id).status == Purchase.Status.COMPLETED
    assert get_credit_balance(user) == 10
    assert not BillingEventDeadLetter.objects.exists()


@pytest.mark.django_db
def test_failed_replay_keeps_dead_letter_and_counts_attempt(patched_gateway):
    _dead_letter_unknown_customer()

    with pytest.raises(CommandError):
        call_command("replay_billing_deadletter")

    dead_letter = BillingEventDeadLetter.objects.get(event_id="evt_dead")
    assert dead_letter.retry_count == 1
    assert dead_letter.last_attempt_at is not None


@pytest.mark.django_db
def test_dry_run_changes_nothing(user, patched_gateway):
    _dead_letter_unknown_customer()
    user.stripe_customer_id = "cus_late"
    user.save(update_fields=["stripe_customer_id"])

    call_command("replay_billing_deadletter", dry_run=True)

    assert BillingEventDeadLetter.objects.get(event_id="evt_dead").retry_count == 0
    assert "list_customer_subscriptions" not in patched_gateway.calls


@pytest.mark.django_db
def test_reason_filter_limits_replay(user, patched_gateway):
    _dead_letter_unknown_customer()
    BillingEventDeadLetter.objects.create(
        event_id="evt_other",
        event_type="charge.refunded",
        payload={},
        failure_reason="malformed_event",
    )
    user.stripe_customer_id = "cus_late"
    user.save(update_fields=["stripe_customer_id"])
    patched_gateway.set_subscription("cus_late", None)

    call_command("replay_billing_deadletter", reason="unknown_customer")

    assert list(BillingEventDeadLetter.objects.values_list("event_id", flat=True)) == ["evt_other"]


@pytest.mark.django_db
def test_no_matching_dead_letters_is_a_warning(capsys):
    call_command("replay_billing_deadletter", event_ids=["evt_missing"])

    assert "No dead-letter events matched" in capsys.readouterr().out
