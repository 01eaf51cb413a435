"""Celery tasks for Stripe event reconciliation and webhook log housekeeping."""
from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from celery import shared_task
from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone

from billing.exceptions import StripeConfigurationError, StripeServiceError
from billing.models import BillingEventDeadLetter, WebhookEventLog
from billing.observability.metrics import RECONCILIATION_COUNT, WEBHOOK_BACKLOG
from billing.tasks_webhooks import HandlerResult, dispatch_event

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (StripeServiceError, OperationalError, IntegrityError)


@shared_task(
    bind=True,
    queue="billing",
    autoretry_for=RETRYABLE_ERRORS,
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=getattr(settings, "BILLING_WEBHOOK_MAX_RETRIES", 5),
)
def process_stripe_event_async(self, event_data: Dict[str, Any], force: bool = False) -> Dict[str, Any]:
    """Process a Stripe webhook event, ensuring idempotency and logging.

    ``force`` re-runs an event whose log entry is already handled; operators
    use it to replay dead letters.
    """

    event_id = event_data.get("id")
    event_type = event_data.get("type")

    payload_hash = hash_event_payload(event_data)

    log_entry, already_processed = _reserve_event_log(event_id, event_type, payload_hash, force=force)
    if already_processed:
        logger.info(
            "Skipping Stripe event %s (%s); status=%s",
            event_id,
            event_type,
            log_entry.status if log_entry else "unknown",
        )
        return {"status": "skipped"}

    try:
        result = dispatch_event(
            event_id=event_id or "",
            event_type=event_type or "",
            payload=event_data,
        )
    except StripeConfigurationError as exc:
        logger.error("Stripe configuration error while processing event %s: %s", event_id, exc)
        _mark_event_failed(log_entry, str(exc))
        _record_dead_letter(
            event_id=event_id,
            event_type=event_type,
            detail=str(exc),
            reason="configuration_error",
            payload=event_data,
        )
        RECONCILIATION_COUNT.labels(route="unknown", status=HandlerResult.ERROR).inc()
        return {"status": HandlerResult.ERROR, "detail": str(exc)}
    except RETRYABLE_ERRORS as exc:
        _mark_event_failed(log_entry, str(exc))
        if _retries_exhausted(self):
            logger.error(
                "Giving up on Stripe event %s (%s) after %s retries: %s",
                event_id,
                event_type,
                self.request.retries,
                exc,
            )
            _record_dead_letter(
                event_id=event_id,
                event_type=event_type,
                detail=str(exc),
                reason="retries_exhausted",
                payload=event_data,
            )
            RECONCILIATION_COUNT.labels(route="unknown", status=HandlerResult.DEAD_LETTER).inc()
            return {"status": HandlerResult.DEAD_LETTER, "detail": str(exc)}
        logger.warning("Retrying Stripe event %s (%s) after error: %s", event_id, event_type, exc)
        raise
    except Exception as exc:
        logger.exception("Unexpected error processing Stripe event %s (%s)", event_id, event_type)
        detail = f"{exc.__class__.__name__}: {exc}"
        _mark_event_failed(log_entry, detail, handled=True)
        _record_dead_letter(
            event_id=event_id,
            event_type=event_type,
            detail=detail,
            reason="unexpected_error",
            payload=event_data,
        )
        RECONCILIATION_COUNT.labels(route="unknown", status=HandlerResult.ERROR).inc()
        return {"status": HandlerResult.ERROR, "detail": detail}

    RECONCILIATION_COUNT.labels(route=result.route, status=result.status).inc()

    if result.status == HandlerResult.DEAD_LETTER:
        _record_dead_letter(
            event_id=event_id,
            event_type=event_type,
            detail=result.detail,
            reason=result.dead_letter_reason,
            payload=result.dead_letter_payload or event_data,
        )
        # Unattributable events will not resolve themselves on redelivery.
        _mark_event_failed(log_entry, result.detail or "dead_letter", handled=True, route=result.route)
        logger.warning(
            "Dead-lettered Stripe event %s (%s): %s",
            event_id,
            event_type,
            result.detail,
        )
        return {"status": HandlerResult.DEAD_LETTER, "detail": result.detail}

    status = (
        WebhookEventLog.Status.IGNORED
        if result.status == HandlerResult.IGNORED
        else WebhookEventLog.Status.PROCESSED
    )
    _mark_event_completed(log_entry, status, route=result.route)

    logger.info(
        "Processed Stripe event %s (%s): %s",
        event_id,
        event_type,
        result.detail or result.status,
    )

    return {"status": result.status, "detail": result.detail}


def _retries_exhausted(task) -> bool:
    max_retries = task.max_retries
    return max_retries is not None and task.request.retries >= max_retries


def _reserve_event_log(
    event_id: Optional[str],
    event_type: Optional[str],
    payload_hash: str,
    *,
    force: bool = False,
) -> Tuple[Optional[WebhookEventLog], bool]:
    if not event_id:
        return None, False

    with transaction.atomic():
        log_entry = WebhookEventLog.objects.select_for_update().filter(event_id=event_id).first()
        if log_entry:
            if log_entry.handled and not force:
                return log_entry, True

            log_entry.event_type = event_type or log_entry.event_type
            log_entry.status = WebhookEventLog.Status.PROCESSING
            log_entry.last_error = ""
            log_entry.processed_at = None
            if payload_hash:
                if log_entry.payload_hash and log_entry.payload_hash != payload_hash:
                    logger.warning("Payload for Stripe event %s changed between deliveries.", event_id)
                log_entry.payload_hash = payload_hash
            log_entry.attempts = (log_entry.attempts or 0) + 1
            log_entry.handled = False
            log_entry.save(
                update_fields=[
                    "event_type",
                    "status",
                    "last_error",
                    "processed_at",
                    "payload_hash",
                    "attempts",
                    "handled",
                ]
            )
            return log_entry, False

        log_entry = WebhookEventLog.objects.create(
            event_id=event_id,
            event_type=event_type or "",
            status=WebhookEventLog.Status.PROCESSING,
            payload_hash=payload_hash or "",
            attempts=1,
        )
        return log_entry, False


def _mark_event_completed(log_entry: Optional[WebhookEventLog], status: str, *, route: str = "") -> None:
    if not log_entry:
        return

    log_entry.status = status
    log_entry.processed_at = timezone.now()
    log_entry.last_error = ""
    log_entry.handled = True
    log_entry.route = route or log_entry.route
    log_entry.save(update_fields=["status", "processed_at", "last_error", "handled", "route"])


def _mark_event_failed(
    log_entry: Optional[WebhookEventLog],
    error: str,
    *,
    handled: bool = False,
    route: str = "",
) -> None:
    if not log_entry:
        return

    log_entry.status = WebhookEventLog.Status.FAILED
    log_entry.last_error = error
    log_entry.processed_at = timezone.now() if handled else None
    log_entry.handled = handled
    log_entry.route = route or log_entry.route
    log_entry.save(update_fields=["status", "last_error", "processed_at", "handled", "route"])


def _record_dead_letter(
    *,
    event_id: Optional[str],
    event_type: Optional[str],
    detail: Optional[str],
    reason: Optional[str],
    payload: Dict[str, Any],
) -> BillingEventDeadLetter:
    identifier = event_id or f"anon:{uuid.uuid4()}"
    defaults = {
        "event_type": event_type or "",
        "payload": payload,
        "failure_reason": reason or detail or "unknown",
        "detail": detail or "",
        "last_attempt_at": timezone.now(),
    }
    dead_letter, created = BillingEventDeadLetter.objects.get_or_create(
        event_id=identifier,
        defaults=defaults,
    )

    if not created:
        dead_letter.payload = payload
        dead_letter.failure_reason = defaults["failure_reason"]
        dead_letter.detail = defaults["detail"]
        dead_letter.last_attempt_at = defaults["last_attempt_at"]
        dead_letter.retry_count = (dead_letter.retry_count or 0) + 1
        dead_letter.save(update_fields=["payload", "failure_reason", "detail", "last_attempt_at", "retry_count"])

    WEBHOOK_BACKLOG.labels(event_type=event_type or "unknown").inc()
    return dead_letter


def hash_event_payload(event_data: Dict[str, Any]) -> str:
    try:
        serialized = json.dumps(event_data, sort_keys=True, separators=(",", ":"))
    except TypeError:
        serialized = json.dumps(event_data, sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@shared_task(queue="billing")
def cleanup_webhook_event_logs(days: int = 7) -> int:
    """Remove handled webhook events older than ``days`` days."""

    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = WebhookEventLog.objects.filter(
        status__in=[WebhookEventLog.Status.PROCESSED, WebhookEventLog.Status.IGNORED],
        handled=True,
        processed_at__lt=cutoff,
    ).delete()

    logger.info("Cleaned up %s processed webhook events older than %s days.", deleted, days)
    return deleted
