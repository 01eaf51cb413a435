import pytest

from billing.events import CheckoutSessionObject, InvoiceObject, decode_event
from billing.exceptions import MalformedEvent
from billing.services.event_router import Route, classify_event
from billing.tests.fakes import make_event


def _classify(event_type, data_object):
    return classify_event(decode_event(make_event(event_type, data_object)))


def test_decode_event_builds_typed_checkout_session():
    event = decode_event(
        make_event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "mode": "payment",
                "payment_intent": {"id": "pi_1"},
                "customer": "cus_1",
                "metadata": {"purchaseId": "abc", "count": 3},
            },
            event_id="evt_1",
        )
    )

    assert event.id == "evt_1"
    assert isinstance(event.data_object, CheckoutSessionObject)
    assert event.data_object.payment_intent == "pi_1"
    assert event.data_object.metadata == {"purchaseId": "abc", "count": "3"}
    assert event.customer_id == "cus_1"
    assert event.created is not None


def test_decode_event_reads_nested_invoice_subscription_reference():
    event = decode_event(
        make_event(
            "invoice.paid",
            {
                "id": "in_1",
                "customer": "cus_1",
                "parent": {"subscription_details": {"subscription": "sub_1"}},
            },
        )
    )

    assert isinstance(event.data_object, InvoiceObject)
    assert event.data_object.subscription == "sub_1"


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}},
        {"id": "evt_1", "data": {"object": {"id": "ch_1"}}},
        {"id": "evt_1", "type": "charge.refunded", "data": {}},
        {"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}},
        {"id": "evt_1", "type": "customer.subscription.updated", "data": {"object": {"id": "sub_1"}}},
    ],
)
def test_decode_event_rejects_payloads_missing_identifiers(payload):
    with pytest.raises(MalformedEvent) as exc:
        decode_event(payload)

    assert exc.value.reason == "malformed_event"


@pytest.mark.parametrize(
    "event_type,data_object,route,reason",
    [
        ("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1"}, Route.PURCHASE, "purchase_event"),
        ("payment_intent.payment_failed", {"id": "pi_1"}, Route.PURCHASE, "purchase_event"),
        (
            "checkout.session.completed",
            {"id": "cs_1", "mode": "payment", "customer": "cus_1"},
            Route.PURCHASE,
            "payment_checkout",
        ),
        (
            "checkout.session.completed",
            {"id": "cs_1", "mode": "subscription", "subscription": "sub_1", "customer": "cus_1"},
            Route.SUBSCRIPTION,
            "references_subscription",
        ),
        (
            "customer.subscription.deleted",
            {"id": "sub_1", "customer": "cus_1"},
            Route.SUBSCRIPTION,
            "subscription_event",
        ),
        ("invoice.upcoming", {"customer": "cus_1"}, Route.SUBSCRIPTION, "subscription_event"),
        (
            "invoice.payment_succeeded",
            {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"},
            Route.SUBSCRIPTION,
            "references_subscription",
        ),
        ("invoice.paid", {"id": "in_1", "customer": "cus_1"}, Route.IGNORE, "no_subscription_reference"),
        ("payment_intent.succeeded", {"id": "pi_1"}, Route.IGNORE, "unsupported_event_type"),
        ("customer.created", {"id": "cus_1"}, Route.IGNORE, "unsupported_event_type"),
    ],
)
def test_classify_event_routes(event_type, data_object, route, reason):
    classification = _classify(event_type, data_object)

    assert classification.route is route
    assert classification.reason == reason


def test_subscription_route_carries_customer_id():
    classification = _classify(
        "customer.subscription.updated",
        {"id": "sub_1", "customer": {"id": "cus_expanded"}},
    )

    assert classification.customer_id == "cus_expanded"


def test_subscription_checkout_without_customer_is_malformed():
    event = decode_event(
        make_event("checkout.session.completed", {"id": "cs_1", "mode": "subscription", "subscription": "sub_1"})
    )

    with pytest.raises(MalformedEvent):
        classify_event(event)


def test_purchase_rules_win_over_subscription_reference():
    # A refund for an invoice payment is still routed to purchases.
    classification = _classify("charge.refunded", {"id": "ch_1", "invoice": "in_1", "customer": "cus_1"})

    assert classification.route is Route.PURCHASE
