"""Stripe webhook handler implementations and helpers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional

from billing.observability.logging import log_billing_event
from roundups.services.settlement import settle_payment_failed, settle_payment_succeeded

logger = logging.getLogger(__name__)

DONATION_INTENT_TYPES = {"roundup", "scheduled"}


class WebhookProcessingError(Exception):
    """Raised when a webhook cannot be processed successfully."""


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a webhook handler invocation."""

    status: str
    detail: str = ""
    user_id: Optional[int] = None
    idempotency_key: Optional[str] = None
    dead_letter_reason: Optional[str] = None
    dead_letter_payload: Optional[Dict[str, Any]] = None

    PROCESSED = "processed"
    IGNORED = "ignored"
    DEAD_LETTER = "dead_letter"
    ALREADY_PROCESSED = "already_processed"
    ERROR = "error"


def dispatch_event(*, event_id: str, event_type: str, payload: Dict[str, Any], received_at: datetime) -> HandlerResult:
    """Route a Stripe webhook event to its dedicated handler."""

    handler = {
        "payment_intent.succeeded": _handle_payment_intent_succeeded,
        "payment_intent.payment_failed": _handle_payment_intent_failed,
        "payment_intent.canceled": _handle_payment_intent_canceled,
    }.get(event_type)

    if handler is None:
        logger.info("Ignoring unsupported Stripe event type '%s'.", event_type)
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unsupported event type")

    return handler(event_id=event_id, payload=payload, received_at=received_at)


def _intent_from_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    intent = (payload.get("data") or {}).get("object") or {}
    if not isinstance(intent, dict) or not intent.get("id"):
        raise WebhookProcessingError("Payment intent payload is missing its identifier.")
    return intent


def _is_donation_intent(metadata: Dict[str, Any]) -> bool:
    return bool(metadata.get("donation_id")) or metadata.get("donation_type") in DONATION_INTENT_TYPES


def _missing_donation(event_id: str, intent: Dict[str, Any], payload: Dict[str, Any]) -> HandlerResult:
    metadata = intent.get("metadata") or {}
    if not _is_donation_intent(metadata):
        return HandlerResult(status=HandlerResult.IGNORED, detail="Payment intent is not a donation")
    return HandlerResult(
        status=HandlerResult.DEAD_LETTER,
        detail=f"No donation matches payment intent {intent.get('id')}",
        idempotency_key=event_id,
        dead_letter_reason="donation_not_found",
        dead_letter_payload=payload,
    )


def _handle_payment_intent_succeeded(*, event_id: str, payload: Dict[str, Any], received_at: datetime) -> HandlerResult:
    intent = _intent_from_payload(payload)
    metadata = intent.get("metadata") or {}
    donation = settle_payment_succeeded(intent["id"], donation_id=metadata.get("donation_id"))
    if donation is None:
        return _missing_donation(event_id, intent, payload)

    log_billing_event(
        message="Donation payment succeeded",
        request_id=event_id,
        user_id=donation.user_id,
        actor="stripe",
        extra={"donation_id": str(donation.pk), "payment_intent_id": intent["id"], "received_at": received_at.isoformat()},
    )
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail=f"Donation {donation.pk} {donation.status}",
        user_id=donation.user_id,
        idempotency_key=f"payment_intent:{intent['id']}:succeeded",
    )


def _handle_payment_intent_failed(*, event_id: str, payload: Dict[str, Any], received_at: datetime) -> HandlerResult:
    intent = _intent_from_payload(payload)
    return _fail_donation(event_id, intent, payload, _extract_failure_reason(intent), outcome="failed")


def _handle_payment_intent_canceled(*, event_id: str, payload: Dict[str, Any], received_at: datetime) -> HandlerResult:
    intent = _intent_from_payload(payload)
    reason = intent.get("cancellation_reason")
    detail = f"Payment intent canceled ({reason})" if reason else "Payment intent canceled"
    return _fail_donation(event_id, intent, payload, detail, outcome="canceled")


def _fail_donation(event_id: str, intent: Dict[str, Any], payload: Dict[str, Any], reason: str, *, outcome: str) -> HandlerResult:
    metadata = intent.get("metadata") or {}
    donation = settle_payment_failed(intent["id"], reason, donation_id=metadata.get("donation_id"))
    if donation is None:
        return _missing_donation(event_id, intent, payload)

    log_billing_event(
        message="Donation payment failed",
        request_id=event_id,
        user_id=donation.user_id,
        actor="stripe",
        extra={"donation_id": str(donation.pk), "payment_intent_id": intent["id"], "reason": reason},
    )
    return HandlerResult(
        status=HandlerResult.PROCESSED,
        detail=f"Donation {donation.pk} {donation.status}",
        user_id=donation.user_id,
        idempotency_key=f"payment_intent:{intent['id']}:{outcome}",
    )


def _extract_failure_reason(intent: Dict[str, Any]) -> str:
    error = intent.get("last_payment_error") or {}
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return message
        code = error.get("decline_code") or error.get("code")
        if code:
            return f"Payment failed ({code})"
    return "Payment failed"


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=dt_timezone.utc)
    except (TypeError, ValueError):  # pragma: no cover - invalid timestamp
        return None
