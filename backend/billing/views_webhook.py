"""Stripe webhook endpoint for processing billing events."""
from __future__ import annotations

import logging
from typing import Optional, Tuple

from django.db import transaction
from django.http import HttpResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from kombu.exceptions import OperationalError as BrokerError
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.exceptions import InvalidSignature, StripeConfigurationError
from billing.models import WebhookEventLog
from billing.observability.metrics import WEBHOOK_RECEIVED_COUNT
from billing.services.stripe_gateway import get_stripe_gateway
from billing.tasks import hash_event_payload, process_stripe_event_async

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Verify Stripe webhook deliveries and enqueue them for asynchronous reconciliation."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        sig_header = request.headers.get("Stripe-Signature")
        body = request.body

        try:
            event = get_stripe_gateway().construct_event(body, sig_header)
        except InvalidSignature as exc:
            logger.warning("Rejected Stripe webhook: %s", exc)
            WEBHOOK_RECEIVED_COUNT.labels(outcome="invalid").inc()
            return HttpResponse(status=400)
        except StripeConfigurationError as exc:
            logger.error("Stripe webhook configuration error: %s", exc)
            WEBHOOK_RECEIVED_COUNT.labels(outcome="misconfigured").inc()
            return HttpResponse(status=500)

        event_id = event.get("id")
        event_type = event.get("type")
        payload_hash = hash_event_payload(event)

        log_entry, already_processed = _record_event_receipt(event_id, event_type, payload_hash)
        if already_processed:
            logger.info(
                "Stripe event %s (%s) already handled with status=%s.",
                event_id,
                event_type,
                log_entry.status if log_entry else "unknown",
            )
            WEBHOOK_RECEIVED_COUNT.labels(outcome="duplicate").inc()
            return Response({"received": True}, status=200)

        try:
            process_stripe_event_async.delay(event)
        except BrokerError as exc:
            # Without a queued task the event would be lost; a 5xx makes Stripe redeliver it.
            logger.error("Unable to enqueue Stripe event %s (%s): %s", event_id, event_type, exc)
            WEBHOOK_RECEIVED_COUNT.labels(outcome="enqueue_failed").inc()
            return HttpResponse(status=503)

        WEBHOOK_RECEIVED_COUNT.labels(outcome="accepted").inc()
        logger.info("Queued Stripe event %s (%s) for processing.", event_id, event_type)
        return Response({"received": True}, status=200)


def _record_event_receipt(
    event_id: Optional[str],
    event_type: Optional[str],
    payload_hash: str,
) -> Tuple[Optional[WebhookEventLog], bool]:
    """Create or update the webhook log to reflect reception of an event."""

    if not event_id:
        logger.warning("Received Stripe event without identifier; proceeding without idempotency log.")
        return None, False

    with transaction.atomic():
        log_entry = WebhookEventLog.objects.select_for_update().filter(event_id=event_id).first()
        if log_entry:
            if log_entry.handled:
                return log_entry, True

            log_entry.event_type = event_type or log_entry.event_type
            log_entry.status = WebhookEventLog.Status.RECEIVED
            log_entry.last_error = ""
            log_entry.processed_at = None
            if payload_hash:
                log_entry.payload_hash = payload_hash
            log_entry.save(update_fields=["event_type", "status", "last_error", "processed_at", "payload_hash"])
            return log_entry, False

        log_entry = WebhookEventLog.objects.create(
            event_id=event_id,
            event_type=event_type or "",
            status=WebhookEventLog.Status.RECEIVED,
            payload_hash=payload_hash or "",
        )
        return log_entry, False
