"""Stripe webhook endpoint settling donation payment intents."""
from __future__ import annotations

import hashlib
import logging
from typing import Optional, Tuple

from django.db import transaction
from django.http import HttpResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.models import WebhookEventLog
from billing.observability.logging import log_billing_event
from billing.observability.metrics import WEBHOOK_EVENT_COUNT
from billing.services.stripe_payments import (
    StripeConfigurationError,
    StripeServiceError,
    StripeWebhookSignatureError,
    _to_plain_dict,
    parse_event,
)
from billing.tasks import process_stripe_event_async

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Verify Stripe webhook events and hand them to the billing queue."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        sig_header = request.headers.get("Stripe-Signature")
        payload = self._decode_payload(request.body)
        if payload is None:
            logger.error("Unable to decode Stripe webhook payload.")
            return HttpResponse(status=400)

        try:
            event = parse_event(payload=payload, sig_header=sig_header or "")
        except StripeWebhookSignatureError:
            WEBHOOK_EVENT_COUNT.labels(event_type="unknown", status="rejected").inc()
            return HttpResponse(status=400)
        except StripeConfigurationError as exc:
            logger.error("Stripe webhook configuration error: %s", exc)
            return HttpResponse(status=500)
        except StripeServiceError as exc:
            logger.warning("Stripe webhook rejected due to malformed payload: %s", exc)
            return HttpResponse(status=400)

        event_dict = _to_plain_dict(event)
        event_id = event_dict.get("id")
        event_type = event_dict.get("type")

        payload_hash = hashlib.sha256(payload.encode("utf-8")).hexdigest() if payload else ""

        log_entry, already_processed = _record_event_receipt(event_id, event_type, payload_hash)
        if already_processed:
            logger.info(
                "Stripe event %s (%s) already handled with status=%s.",
                event_id,
                event_type,
                log_entry.status if log_entry else "unknown",
            )
            return Response({"status": log_entry.status}, status=200)

        process_stripe_event_async.delay(event_dict)
        WEBHOOK_EVENT_COUNT.labels(event_type=event_type or "unknown", status="queued").inc()
        log_billing_event(
            message="Stripe event queued",
            request_id=event_id,
            actor="stripe",
            extra={"event_type": event_type},
        )
        return Response({"status": "queued"}, status=202)

    @staticmethod
    def _decode_payload(body: bytes) -> Optional[str]:
        if not body:
            return ""
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError:
            return None


def _record_event_receipt(event_id: Optional[str], event_type: Optional[str], payload_hash: str) -> Tuple[Optional[WebhookEventLog], bool]:
    """Create or refresh the webhook log entry for a received event.

    Returns the entry and whether the event was already fully handled.
    """

    if not event_id:
        logger.warning("Received Stripe event without identifier; proceeding without idempotency log.")
        return None, False

    with transaction.atomic():
        log_entry, created = WebhookEventLog.objects.select_for_update().get_or_create(
            event_id=event_id,
            defaults={
                "event_type": event_type or "",
                "status": WebhookEventLog.Status.RECEIVED,
                "payload_hash": payload_hash or "",
                "idempotency_key": event_id,
            },
        )
        if created:
            return log_entry, False
        if log_entry.handled:
            return log_entry, True

        log_entry.event_type = event_type or log_entry.event_type
        log_entry.status = WebhookEventLog.Status.RECEIVED
        log_entry.last_error = ""
        if payload_hash:
            log_entry.payload_hash = payload_hash
        log_entry.save(update_fields=["event_type", "status", "last_error", "payload_hash"])
        return log_entry, False
