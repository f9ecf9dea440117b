"""Replay dead-lettered Stripe events through the webhook pipeline."""
from __future__ import annotations

from typing import Iterable, Optional

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from billing.models import BillingEventDeadLetter, WebhookEventLog
from billing.tasks import HandlerResult, process_stripe_event_async


class Command(BaseCommand):
    help = "Replay stored Stripe dead-letter events, e.g. once the missing donation has been repaired."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--event-id",
            dest="event_ids",
            action="append",
            help="Replay only the specified Stripe event id. Can be supplied multiple times.",
        )
        parser.add_argument(
            "--event-type",
            dest="event_type",
            help="Replay only events of this type, e.g. payment_intent.succeeded.",
        )
        parser.add_argument(
            "--payment-intent",
            dest="payment_intent_id",
            help="Replay only events referencing this payment intent.",
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
            help="List the events that would be replayed without processing them.",
        )

    def handle(self, *args, **options) -> None:
        event_ids: Optional[Iterable[str]] = options.get("event_ids")
        event_type: Optional[str] = options.get("event_type")
        payment_intent_id: Optional[str] = options.get("payment_intent_id")
        limit: Optional[int] = options.get("limit")
        dry_run: bool = options.get("dry_run")

        queryset = BillingEventDeadLetter.objects.order_by("created_at")
        if event_ids:
            queryset = queryset.filter(event_id__in=list(event_ids))
        if event_type:
            queryset = queryset.filter(event_type=event_type)
        if payment_intent_id:
            queryset = queryset.filter(payment_intent_id=payment_intent_id)
        if limit is not None:
            queryset = queryset[:limit]

        dead_letters = list(queryset)
        if not dead_letters:
            self.stdout.write(self.style.WARNING("No dead-letter events matched the requested filters."))
            return

        if dry_run:
            for dead_letter in dead_letters:
                self.stdout.write(f"Would replay {dead_letter.event_id} ({dead_letter.event_type}): {dead_letter.failure_reason}")
            self.stdout.write(self.style.WARNING(f"Dry run complete. {len(dead_letters)} events would be replayed."))
            return

        processed = failed = 0
        for dead_letter in dead_letters:
            self.stdout.write(f"Replaying Stripe event {dead_letter.event_id}")

            payload = dict(dead_letter.payload or {})
            payload.setdefault("id", dead_letter.event_id)
            payload.setdefault("type", dead_letter.event_type)

            # A handled log entry would short-circuit the replay.
            WebhookEventLog.objects.filter(event_id=dead_letter.event_id).update(handled=False)

            result = process_stripe_event_async.run(payload)
            status = result.get("status")

            if status in {HandlerResult.PROCESSED, HandlerResult.IGNORED}:
                dead_letter.delete()
                processed += 1
                continue

            failed += 1
            dead_letter.refresh_from_db()
            dead_letter.last_attempt_at = timezone.now()
            dead_letter.failure_reason = result.get("detail") or status or "replay_failed"
            dead_letter.save(update_fields=["last_attempt_at", "failure_reason"])

        summary = f"Replay complete: {processed} succeeded, {failed} failed, {len(dead_letters)} total."
        if failed:
            raise CommandError(summary)
        self.stdout.write(self.style.SUCCESS(summary))
