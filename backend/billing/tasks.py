"""Celery tasks for Stripe event handling and webhook log maintenance."""
from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from celery import shared_task
from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from billing.models import BillingEventDeadLetter, WebhookEventLog
from billing.observability.metrics import WEBHOOK_BACKLOG, WEBHOOK_EVENT_COUNT
from billing.tasks_webhooks import (
    HandlerResult,
    WebhookProcessingError,
    _coerce_timestamp,
    dispatch_event,
)

logger = logging.getLogger(__name__)

__all__ = ["HandlerResult", "process_stripe_event_async", "cleanup_webhook_event_logs"]


def _max_retries() -> int:
    return int(getattr(settings, "BILLING_WEBHOOK_MAX_RETRIES", 5))


@shared_task(bind=True, queue="billing", autoretry_for=(IntegrityError,), retry_backoff=True, max_retries=5)
def process_stripe_event_async(self, event_data: Dict[str, Any]) -> Dict[str, Any]:
    """Process a Stripe webhook event, ensuring idempotency and logging."""

    event_id = event_data.get("id")
    event_type = event_data.get("type") or ""

    payload_hash = _hash_event_payload(event_data)

    log_entry, already_processed = _reserve_event_log(event_id, event_type, payload_hash)
    if already_processed:
        logger.info(
            "Skipping Stripe event %s (%s); status=%s",
            event_id,
            event_type,
            log_entry.status if log_entry else "unknown",
        )
        WEBHOOK_EVENT_COUNT.labels(event_type=event_type, status=HandlerResult.ALREADY_PROCESSED).inc()
        return {"status": "skipped"}

    received_at = timezone.now()
    created_at = _coerce_timestamp(event_data.get("created"))
    if created_at:
        logger.debug("Stripe event %s delivered %ss after creation.", event_id, (received_at - created_at).total_seconds())

    try:
        with transaction.atomic():
            result = dispatch_event(
                event_id=event_id or "",
                event_type=event_type,
                payload=event_data,
                received_at=received_at,
            )
    except WebhookProcessingError as exc:
        logger.warning("Webhook processing error for event %s: %s", event_id, exc)
        result = HandlerResult(
            status=HandlerResult.DEAD_LETTER,
            detail=str(exc),
            dead_letter_reason="invalid_payload",
        )
    except Exception as exc:
        max_retries = _max_retries()
        if self.request.retries >= max_retries:
            logger.exception("Stripe event %s failed after %s retries; dead-lettering.", event_id, max_retries)
            result = HandlerResult(
                status=HandlerResult.DEAD_LETTER,
                detail=str(exc),
                dead_letter_reason="retries_exhausted",
            )
        else:
            logger.exception("Unexpected error processing Stripe event %s", event_id)
            _mark_event_failed(log_entry, str(exc))
            WEBHOOK_EVENT_COUNT.labels(event_type=event_type, status=HandlerResult.ERROR).inc()
            raise self.retry(exc=exc, max_retries=max_retries)

    if result.status == HandlerResult.DEAD_LETTER:
        _record_dead_letter(
            event_id=event_id,
            event_type=event_type,
            detail=result.detail,
            reason=result.dead_letter_reason,
            payload=result.dead_letter_payload or event_data,
        )
        _mark_event_failed(log_entry, result.detail or "dead_letter", handled=False)
        WEBHOOK_EVENT_COUNT.labels(event_type=event_type, status=HandlerResult.DEAD_LETTER).inc()
        WEBHOOK_BACKLOG.labels(event_type=event_type).inc()
        logger.warning(
            "Dead-lettered Stripe event %s (%s): %s",
            event_id,
            event_type,
            result.detail,
        )
        return {"status": HandlerResult.DEAD_LETTER, "detail": result.detail}

    status = WebhookEventLog.Status.PROCESSED if result.status == HandlerResult.PROCESSED else WebhookEventLog.Status.IGNORED
    _mark_event_completed(
        log_entry,
        status,
        idempotency_key=result.idempotency_key or (event_id or ""),
    )
    WEBHOOK_EVENT_COUNT.labels(event_type=event_type, status=result.status).inc()

    logger.info(
        "Processed Stripe event %s (%s): %s",
        event_id,
        event_type,
        result.detail or result.status,
    )

    return {"status": result.status, "detail": result.detail}


def _reserve_event_log(event_id: Optional[str], event_type: Optional[str], payload_hash: str):
    if not event_id:
        return None, False

    with transaction.atomic():
        log_entry = WebhookEventLog.objects.select_for_update().filter(event_id=event_id).first()
        if log_entry:
            if log_entry.handled:
                return log_entry, True

            log_entry.event_type = event_type or log_entry.event_type
            log_entry.status = WebhookEventLog.Status.PROCESSING
            log_entry.last_error = ""
            log_entry.processed_at = None
            if payload_hash:
                log_entry.payload_hash = payload_hash
            if not log_entry.idempotency_key:
                log_entry.idempotency_key = event_id
            log_entry.attempts = F("attempts") + 1
            log_entry.save(
                update_fields=[
                    "event_type",
                    "status",
                    "last_error",
                    "processed_at",
                    "payload_hash",
                    "idempotency_key",
                    "attempts",
                ]
            )
            log_entry.refresh_from_db(fields=["attempts"])
            return log_entry, False

        log_entry = WebhookEventLog.objects.create(
            event_id=event_id,
            event_type=event_type or "",
            status=WebhookEventLog.Status.PROCESSING,
            payload_hash=payload_hash or "",
            idempotency_key=event_id,
            attempts=1,
        )
        return log_entry, False


def _mark_event_completed(
    log_entry: Optional[WebhookEventLog],
    status: str,
    *,
    idempotency_key: Optional[str] = None,
) -> None:
    if not log_entry:
        return

    log_entry.status = status
    log_entry.processed_at = timezone.now()
    log_entry.last_error = ""
    log_entry.handled = True
    updates = ["status", "processed_at", "last_error", "handled"]

    if idempotency_key and log_entry.idempotency_key != idempotency_key:
        log_entry.idempotency_key = idempotency_key
        updates.append("idempotency_key")

    log_entry.save(update_fields=updates)


def _mark_event_failed(
    log_entry: Optional[WebhookEventLog],
    error: str,
    *,
    handled: bool = False,
) -> None:
    if not log_entry:
        return

    log_entry.status = WebhookEventLog.Status.FAILED
    log_entry.last_error = error
    log_entry.processed_at = None
    log_entry.handled = handled
    log_entry.save(update_fields=["status", "last_error", "processed_at", "handled"])


def _record_dead_letter(
    *,
    event_id: Optional[str],
    event_type: Optional[str],
    detail: Optional[str],
    reason: Optional[str],
    payload: Dict[str, Any],
) -> None:
    identifier = event_id or f"anon:{uuid.uuid4()}"
    failure_reason = f"{reason}: {detail}" if reason and detail else (reason or detail or "unknown")
    defaults = {
        "event_type": event_type or "",
        "payment_intent_id": _payment_intent_id(payload),
        "payload": payload,
        "failure_reason": failure_reason,
        "last_attempt_at": timezone.now(),
    }
    dead_letter, created = BillingEventDeadLetter.objects.get_or_create(
        event_id=identifier,
        defaults=defaults,
    )

    if not created:
        dead_letter.payload = payload
        dead_letter.payment_intent_id = defaults["payment_intent_id"]
        dead_letter.failure_reason = defaults["failure_reason"]
        dead_letter.last_attempt_at = defaults["last_attempt_at"]
        dead_letter.retry_count = (dead_letter.retry_count or 0) + 1
        dead_letter.save(update_fields=["payload", "payment_intent_id", "failure_reason", "last_attempt_at", "retry_count"])


def _payment_intent_id(payload: Dict[str, Any]) -> str:
    obj = (payload.get("data") or {}).get("object") or {}
    if isinstance(obj, dict) and obj.get("object") == "payment_intent":
        return str(obj.get("id") or "")
    return ""


def _hash_event_payload(event_data: Dict[str, Any]) -> str:
    try:
        serialized = json.dumps(event_data, sort_keys=True, separators=(",", ":"))
    except TypeError:
        serialized = json.dumps(event_data, sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@shared_task(queue="maintenance")
def cleanup_webhook_event_logs(days: int = 7) -> int:
    """Remove processed webhook events older than ``days`` days."""

    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = WebhookEventLog.objects.filter(
        status__in=[WebhookEventLog.Status.PROCESSED, WebhookEventLog.Status.IGNORED],
        handled=True,
        processed_at__lt=cutoff,
    ).delete()

    logger.info("Cleaned up %s processed webhook events older than %s days.", deleted, days)
    return deleted
