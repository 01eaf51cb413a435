"""Management command to replay billing dead-letter Stripe events."""
from __future__ import annotations

from typing import Iterable, Optional

from django.core.management.base import BaseCommand, CommandError

from billing.models import BillingEventDeadLetter
from billing.tasks import process_stripe_event_async
from billing.tasks_webhooks import HandlerResult

REPLAY_SUCCESS_STATUSES = {
    HandlerResult.PROCESSED,
    HandlerResult.IGNORED,
    HandlerResult.ALREADY_PROCESSED,
}


class Command(BaseCommand):
    help = "Replay stored billing dead-letter events through the normal processing pipeline."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--event-id",
            dest="event_ids",
            action="append",
            help="Replay only the specified Stripe event id. Can be supplied multiple times.",
        )
        parser.add_argument(
            "--reason",
            dest="reason",
            default=None,
            help="Replay only dead letters recorded with this failure reason.",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of events to replay in this run.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Preview events that would be replayed without performing any changes.",
        )

    def handle(self, *args, **options) -> None:
        event_ids: Optional[Iterable[str]] = options.get("event_ids")
        reason: Optional[str] = options.get("reason")
        limit: Optional[int] = options.get("limit")
        dry_run: bool = options.get("dry_run")

        queryset = BillingEventDeadLetter.objects.order_by("created_at")
        if event_ids:
            queryset = queryset.filter(event_id__in=list(event_ids))
        if reason:
            queryset = queryset.filter(failure_reason=reason)

        if limit is not None:
            queryset = queryset[:limit]

        dead_letters = list(queryset)
        total = len(dead_letters)
        if total == 0:
            self.stdout.write(self.style.WARNING("No dead-letter events matched the requested filters."))
            return

        processed = 0
        failed = 0

        for dead_letter in dead_letters:
            self.stdout.write(f"Replaying Stripe event {dead_letter.event_id} ({dead_letter.failure_reason})")
            if dry_run:
                continue

            payload = dict(dead_letter.payload or {})
            payload.setdefault("id", dead_letter.event_id)
            payload.setdefault("type", dead_letter.event_type)

            result = process_stripe_event_async.run(payload, force=True)
            status = result.get("status")

            if status in REPLAY_SUCCESS_STATUSES:
                dead_letter.delete()
                processed += 1
                continue

            # A failed replay is dead-lettered again by the task, which bumps retry_count.
            failed += 1
            self.stdout.write(
                self.style.ERROR(f"  {dead_letter.event_id}: {result.get('detail') or status}")
            )

        if dry_run:
            self.stdout.write(
                self.style.WARNING(f"Dry run complete. {total} events would be replayed.")
            )
            return

        summary = f"Replay complete: {processed} succeeded, {failed} failed, {total} total."
        if failed:
            raise CommandError(summary)
        self.stdout.write(self.style.SUCCESS(summary))
