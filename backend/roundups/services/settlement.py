"""Settle donations from payment intent outcomes and recover interrupted claims."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from billing.models import BillingAuditLog
from billing.observability.logging import log_roundup_event
from billing.observability.metrics import ROUNDUP_DONATIONS_SETTLED
from billing.services import stripe_payments
from billing.services.donors import DonorNotFound
from roundups.exceptions import RoundUpError
from roundups.models import Donation, RoundUpConfig, RoundUpTransaction, ScheduledDonation
from roundups.services import orchestrator

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
IN_FLIGHT_STATUSES = (Donation.Status.PENDING, Donation.Status.PROCESSING)
FAILED_INTENT_STATUSES = {"canceled", "requires_payment_method"}


@dataclass(frozen=True)
class ReconcileResult:
    checked: int = 0
    succeeded: int = 0
    failed: int = 0
    in_flight: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "in_flight": self.in_flight,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class RecoveryResult:
    resumed: int = 0
    failed: int = 0
    released: int = 0
    waiting: int = 0

    def as_dict(self) -> dict:
        return {
            "resumed": self.resumed,
            "failed": self.failed,
            "released": self.released,
            "waiting": self.waiting,
        }


def _coerce_uuid(value) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _locked_donation(payment_intent_id: Optional[str], donation_id=None) -> Optional[Donation]:
    queryset = Donation.objects.select_for_update()
    donation = None
    if payment_intent_id:
        donation = queryset.filter(stripe_payment_intent_id=payment_intent_id).first()
    if donation is None:
        pk = _coerce_uuid(donation_id)
        if pk is not None:
            donation = queryset.filter(pk=pk).first()
    return donation


def _has_other_in_flight(config: RoundUpConfig, donation: Donation) -> bool:
    return (
        Donation.objects.filter(roundup_config=config, status__in=IN_FLIGHT_STATUSES)
        .exclude(pk=donation.pk)
        .exists()
    )


def settle_payment_succeeded(payment_intent_id: Optional[str], *, donation_id=None) -> Optional[Donation]:
    """Complete the donation charged by ``payment_intent_id``.

    Returns ``None`` when no donation matches. Settling an already completed
    donation is a no-op.
    """

    now = timezone.now()
    with transaction.atomic():
        donation = _locked_donation(payment_intent_id, donation_id)
        if donation is None:
            logger.warning("No donation found for succeeded payment intent %s", payment_intent_id)
            return None
        if donation.status == Donation.Status.COMPLETED:
            return donation

        previous_status = donation.status
        donation.status = Donation.Status.COMPLETED
        donation.completed_at = now
        donation.failure_reason = ""
        update_fields = ["status", "completed_at", "failure_reason", "updated_at"]
        if payment_intent_id and not donation.stripe_payment_intent_id:
            donation.stripe_payment_intent_id = payment_intent_id
            update_fields.append("stripe_payment_intent_id")
        donation.save(update_fields=update_fields)

        config = None
        if donation.roundup_config_id:
            config = RoundUpConfig.objects.select_for_update().get(pk=donation.roundup_config_id)
            if previous_status != Donation.Status.PROCESSING:
                # The batch was never linked, so the balance still carries it.
                RoundUpTransaction.objects.filter(
                    pk__in=donation.round_up_transaction_ids,
                    donation__isnull=True,
                ).update(
                    donation=donation,
                    stripe_payment_intent_id=donation.stripe_payment_intent_id,
                    donation_attempted_at=now,
                )
                config.current_month_total = max(config.current_month_total - donation.amount, ZERO)

            RoundUpTransaction.objects.filter(donation=donation).update(
                status=RoundUpTransaction.Status.DONATED,
                donated_at=now,
            )

            config.total_donated += donation.amount
            config.last_month_reset = now
            config.last_failure_reason = ""
            config.last_failure_at = None
            fields = ["current_month_total", "total_donated", "last_month_reset", "last_failure_reason", "last_failure_at"]
            if not _has_other_in_flight(config, donation):
                config.status = RoundUpConfig.Status.PENDING
                config.processing_started_at = None
                fields += ["status", "processing_started_at"]
            config.save(update_fields=fields + ["updated_at"])

        BillingAuditLog.objects.create(
            user_id=donation.user_id,
            event_type="donation.completed",
            stripe_id=donation.stripe_payment_intent_id or "",
            actor="stripe",
            details={
                "donation_id": str(donation.pk),
                "donation_type": donation.donation_type,
                "previous_status": previous_status,
                "amount": str(donation.amount),
                "total_amount": str(donation.total_amount),
            },
        )

    ROUNDUP_DONATIONS_SETTLED.labels(outcome="succeeded").inc()
    log_roundup_event(
        message="Donation settled",
        config_id=donation.roundup_config_id,
        user_id=donation.user_id,
        extra={
            "donation_id": str(donation.pk),
            "payment_intent_id": donation.stripe_payment_intent_id,
            "amount": str(donation.amount),
            "total_donated": str(config.total_donated) if config is not None else None,
        },
    )
    return donation


def settle_payment_failed(payment_intent_id: Optional[str], reason: str, *, donation_id=None) -> Optional[Donation]:
    """Fail the donation charged by ``payment_intent_id`` and release its batch.

    Round-ups return to the outstanding pool and, when the balance had already
    been handed to the donation, its amount is restored to the config.
    A completed donation is never failed afterwards.
    """

    now = timezone.now()
    reason = (reason or "Payment failed")[:1000]
    with transaction.atomic():
        donation = _locked_donation(payment_intent_id, donation_id)
        if donation is None:
            logger.warning("No donation found for failed payment intent %s", payment_intent_id)
            return None
        if donation.status in (Donation.Status.FAILED, Donation.Status.COMPLETED):
            return donation

        previous_status = donation.status
        donation.status = Donation.Status.FAILED
        donation.failure_reason = reason
        donation.save(update_fields=["status", "failure_reason", "updated_at"])

        if donation.roundup_config_id:
            config = RoundUpConfig.objects.select_for_update().get(pk=donation.roundup_config_id)
            RoundUpTransaction.objects.filter(donation=donation).update(
                donation=None,
                stripe_payment_intent_id=None,
                last_payment_failure_at=now,
                last_payment_failure_reason=reason,
            )
            if previous_status == Donation.Status.PROCESSING:
                config.current_month_total += donation.amount
            config.last_failure_reason = reason
            config.last_failure_at = now
            fields = ["current_month_total", "last_failure_reason", "last_failure_at"]
            if not _has_other_in_flight(config, donation):
                config.status = RoundUpConfig.Status.FAILED
                config.processing_started_at = None
                fields += ["status", "processing_started_at"]
            config.save(update_fields=fields + ["updated_at"])
        elif donation.scheduled_donation_id:
            ScheduledDonation.objects.filter(pk=donation.scheduled_donation_id).update(
                last_failure_reason=reason,
                updated_at=now,
            )

        BillingAuditLog.objects.create(
            user_id=donation.user_id,
            event_type="donation.failed",
            stripe_id=donation.stripe_payment_intent_id or "",
            actor="stripe",
            details={
                "donation_id": str(donation.pk),
                "donation_type": donation.donation_type,
                "previous_status": previous_status,
                "amount": str(donation.amount),
                "reason": reason,
            },
        )

    ROUNDUP_DONATIONS_SETTLED.labels(outcome="failed").inc()
    log_roundup_event(
        message="Donation payment failed",
        config_id=donation.roundup_config_id,
        user_id=donation.user_id,
        level=logging.WARNING,
        extra={"donation_id": str(donation.pk), "reason": reason},
    )
    return donation


def _intent_failure_reason(intent: dict) -> str:
    error = intent.get("last_payment_error") or {}
    message = error.get("message") if isinstance(error, dict) else None
    return message or f"Payment intent {intent.get('status')}"


def reconcile_in_flight(older_than: Optional[datetime] = None) -> ReconcileResult:
    """Poll Stripe for donations whose outcome webhook has not arrived."""

    if older_than is None:
        grace = getattr(settings, "ROUNDUP_SETTLEMENT_GRACE_MINUTES", 120)
        older_than = timezone.now() - timedelta(minutes=grace)

    checked = succeeded = failed = in_flight = errors = 0
    candidates = Donation.objects.filter(
        status__in=IN_FLIGHT_STATUSES,
        stripe_payment_intent_id__isnull=False,
        updated_at__lt=older_than,
    ).order_by("updated_at")

    for donation in candidates:
        checked += 1
        try:
            intent = stripe_payments.retrieve_payment_intent(donation.stripe_payment_intent_id)
        except (stripe_payments.StripeServiceError, stripe_payments.StripeConfigurationError) as exc:
            errors += 1
            logger.warning("Could not poll payment intent %s: %s", donation.stripe_payment_intent_id, exc)
            continue

        status = intent.get("status")
        if status == "succeeded":
            settle_payment_succeeded(donation.stripe_payment_intent_id, donation_id=donation.pk)
            succeeded += 1
        elif status in FAILED_INTENT_STATUSES:
            settle_payment_failed(donation.stripe_payment_intent_id, _intent_failure_reason(intent), donation_id=donation.pk)
            failed += 1
        else:
            in_flight += 1

    result = ReconcileResult(checked=checked, succeeded=succeeded, failed=failed, in_flight=in_flight, errors=errors)
    logger.info("Reconciled in-flight donations: %s", result.as_dict())
    return result


def recover_stalled_claims(now: Optional[datetime] = None) -> RecoveryResult:
    """Finish or release configs left in ``processing`` by an interrupted run.

    A pending donation for the claim is resumed with its original Stripe
    idempotency key, so the donor is never charged twice for it.
    """

    now = now or timezone.now()
    stale_minutes = getattr(settings, "ROUNDUP_STALE_CLAIM_MINUTES", 60)
    cutoff = now - timedelta(minutes=stale_minutes)

    resumed = failed = released = waiting = 0
    for config in RoundUpConfig.objects.stalled(cutoff).order_by("pk"):
        donation = Donation.objects.filter(idempotency_key=orchestrator.claim_key(config)).first()

        if donation is None:
            # A resumed donation keeps the key of the claim that created it.
            donation = (
                Donation.objects.filter(roundup_config=config, status__in=IN_FLIGHT_STATUSES)
                .order_by("created_at")
                .first()
            )
        if donation is None:
            config.reset_to_pending()
            released += 1
            logger.info("Released stalled claim on round-up config %s.", config.pk)
            continue

        if donation.status == Donation.Status.PENDING:
            try:
                orchestrator.trigger_donation(config, [], trigger=donation.trigger)
            except (RoundUpError, DonorNotFound) as exc:
                failed += 1
                logger.warning("Could not resume donation %s for config %s: %s", donation.pk, config.pk, exc)
                continue
            resumed += 1
        elif donation.status == Donation.Status.FAILED:
            config.mark_as_failed(donation.failure_reason or "Donation failed before the claim was released.")
            failed += 1
        elif donation.status == Donation.Status.COMPLETED:
            config.reset_to_pending()
            released += 1
        else:
            waiting += 1

    result = RecoveryResult(resumed=resumed, failed=failed, released=released, waiting=waiting)
    if any(result.as_dict().values()):
        logger.info("Recovered stalled round-up claims: %s", result.as_dict())
    return result
