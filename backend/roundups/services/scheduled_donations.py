"""Recurring fixed-amount donations."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta
from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from billing.models import BillingAuditLog
from billing.observability.logging import log_roundup_event
from billing.observability.metrics import PAYMENT_INTENT_COUNT
from billing.services import stripe_payments
from billing.services.donors import DonorNotFound, find_donor
from billing.services.tax import calculate_tax
from roundups.exceptions import PaymentIntentFailed
from roundups.models import Donation, ScheduledDonation
from roundups.services.orchestrator import payment_idempotency_key

logger = logging.getLogger(__name__)

Frequency = ScheduledDonation.Frequency
IntervalUnit = ScheduledDonation.IntervalUnit

FREQUENCY_STEPS = {
    Frequency.DAILY: relativedelta(days=1),
    Frequency.WEEKLY: relativedelta(weeks=1),
    Frequency.MONTHLY: relativedelta(months=1),
    Frequency.QUARTERLY: relativedelta(months=3),
    Frequency.YEARLY: relativedelta(years=1),
}


def calculate_next_donation_date(
    frequency: str,
    from_date: datetime,
    custom_interval_value: Optional[int] = None,
    custom_interval_unit: Optional[str] = None,
) -> datetime:
    """Return the occurrence that follows ``from_date``.

    Month arithmetic clamps to the end of shorter months, so a schedule
    started on Jan 31st next runs on Feb 28th/29th.
    """

    if frequency in FREQUENCY_STEPS:
        return from_date + FREQUENCY_STEPS[frequency]

    if frequency == Frequency.CUSTOM:
        if not custom_interval_value or custom_interval_value < 1:
            raise ValueError("Custom schedules require a positive interval value.")
        if custom_interval_unit == IntervalUnit.DAYS:
            return from_date + relativedelta(days=custom_interval_value)
        if custom_interval_unit == IntervalUnit.WEEKS:
            return from_date + relativedelta(weeks=custom_interval_value)
        if custom_interval_unit == IntervalUnit.MONTHS:
            return from_date + relativedelta(months=custom_interval_value)
        raise ValueError(f"Unsupported custom interval unit: {custom_interval_unit!r}")

    raise ValueError(f"Unsupported donation frequency: {frequency!r}")


def _next_after(scheduled: ScheduledDonation, occurrence: datetime, now: datetime) -> datetime:
    next_date = calculate_next_donation_date(
        scheduled.frequency,
        occurrence,
        scheduled.custom_interval_value,
        scheduled.custom_interval_unit,
    )
    # Missed occurrences are not charged retroactively.
    while next_date <= now:
        next_date = calculate_next_donation_date(
            scheduled.frequency,
            next_date,
            scheduled.custom_interval_value,
            scheduled.custom_interval_unit,
        )
    return next_date


def occurrence_key(scheduled: ScheduledDonation, occurrence: datetime) -> str:
    return f"scheduled:{scheduled.pk}:{occurrence.date().isoformat()}"


def _claim(scheduled: ScheduledDonation, now: datetime) -> bool:
    updated = ScheduledDonation.objects.filter(
        pk=scheduled.pk,
        is_active=True,
        status=ScheduledDonation.Status.ACTIVE,
    ).update(
        status=ScheduledDonation.Status.PROCESSING,
        processing_started_at=now,
        updated_at=timezone.now(),
    )
    if updated:
        scheduled.refresh_from_db()
    return bool(updated)


def _release(scheduled: ScheduledDonation, reason: str) -> None:
    ScheduledDonation.objects.filter(pk=scheduled.pk).update(
        status=ScheduledDonation.Status.ACTIVE,
        last_failure_reason=reason[:1000],
        processing_started_at=None,
        updated_at=timezone.now(),
    )


def _advance(scheduled: ScheduledDonation, occurrence: datetime, now: datetime) -> None:
    ScheduledDonation.objects.filter(pk=scheduled.pk).update(
        status=ScheduledDonation.Status.ACTIVE,
        next_donation_date=_next_after(scheduled, occurrence, now),
        last_executed_at=now,
        total_executions=F("total_executions") + 1,
        last_failure_reason="",
        processing_started_at=None,
        updated_at=now,
    )


def _pending_donation(scheduled: ScheduledDonation, donor, occurrence: datetime) -> Donation:
    breakdown = calculate_tax(scheduled.amount, scheduled.is_taxable)
    donation, created = Donation.objects.get_or_create(
        idempotency_key=occurrence_key(scheduled, occurrence),
        defaults={
            "donor": donor,
            "user_id": scheduled.user_id,
            "organization_ref": scheduled.organization_ref,
            "cause_ref": scheduled.cause_ref,
            "donation_type": Donation.DonationType.SCHEDULED,
            "trigger": Donation.Trigger.SCHEDULED,
            "scheduled_donation": scheduled,
            "amount": breakdown.amount,
            "tax_amount": breakdown.tax_amount,
            "total_amount": breakdown.total_amount,
            "currency": scheduled.currency,
            "special_message": scheduled.special_message,
            "metadata": {
                "type": "scheduled_donation",
                "frequency": scheduled.frequency,
                "occurrence": occurrence.isoformat(),
                "attempts": 0,
            },
        },
    )
    if not created and donation.status == Donation.Status.FAILED:
        donation.status = Donation.Status.PENDING
        donation.failure_reason = ""
        donation.save(update_fields=["status", "failure_reason", "updated_at"])
    return donation


def _payment_key(donation: Donation) -> str:
    attempts = int(donation.metadata.get("attempts") or 0)
    key = payment_idempotency_key(donation)
    return f"{key}:retry-{attempts}" if attempts else key


def _keep_intent(donation: Donation, payment_intent_id: str, reason: str) -> None:
    try:
        Donation.objects.filter(pk=donation.pk, stripe_payment_intent_id__isnull=True).update(
            stripe_payment_intent_id=payment_intent_id,
            failure_reason=reason[:1000],
            updated_at=timezone.now(),
        )
    except DatabaseError:
        logger.exception("Could not attach payment intent %s to donation %s", payment_intent_id, donation.pk)


def _fail(scheduled: ScheduledDonation, donation: Optional[Donation], reason: str) -> None:
    if donation is not None and donation.status == Donation.Status.PENDING:
        donation.status = Donation.Status.FAILED
        donation.failure_reason = reason[:1000]
        donation.metadata = {**donation.metadata, "attempts": int(donation.metadata.get("attempts") or 0) + 1}
        donation.save(update_fields=["status", "failure_reason", "metadata", "updated_at"])
    _release(scheduled, reason)
    log_roundup_event(
        message="Scheduled donation failed",
        user_id=scheduled.user_id,
        level=logging.WARNING,
        extra={"scheduled_donation_id": scheduled.pk, "reason": reason},
    )


def execute_scheduled_donation(scheduled: ScheduledDonation, *, now: Optional[datetime] = None) -> Optional[Donation]:
    """Charge one due occurrence of ``scheduled``.

    Returns ``None`` when another worker already holds the row. On failure
    the schedule returns to ``active`` without advancing, so the occurrence is
    retried on the next run.
    """

    now = now or timezone.now()
    if not _claim(scheduled, now):
        logger.info("Scheduled donation %s is not claimable; skipping.", scheduled.pk)
        return None

    occurrence = scheduled.next_donation_date
    try:
        donor = find_donor(scheduled.user_id)
        donation = _pending_donation(scheduled, donor, occurrence)
    except DonorNotFound as exc:
        _fail(scheduled, None, str(exc))
        raise
    except DatabaseError as exc:
        logger.exception("Could not create donation for scheduled donation %s", scheduled.pk)
        _fail(scheduled, None, str(exc))
        raise PaymentIntentFailed(str(exc)) from exc

    if donation.status in Donation.LOCKED_STATUSES:
        # Charged by an earlier run that stopped before advancing the schedule.
        _advance(scheduled, occurrence, now)
        return donation

    try:
        intent = stripe_payments.create_payment_intent(
            amount=donation.total_amount,
            currency=donation.currency,
            customer_id=donor.stripe_customer_id,
            payment_method_id=donor.default_payment_method_id,
            idempotency_key=_payment_key(donation),
            metadata={
                "donation_id": donation.pk,
                "scheduled_donation_id": scheduled.pk,
                "user_id": scheduled.user_id,
                "organization_id": scheduled.organization_ref,
                "cause_id": scheduled.cause_ref,
                "donation_type": "scheduled",
                "frequency": scheduled.frequency,
                "base_amount": donation.amount,
                "tax_amount": donation.tax_amount,
                "total_amount": donation.total_amount,
            },
            description=f"Scheduled {scheduled.get_frequency_display().lower()} donation",
        )
    except (stripe_payments.StripeServiceError, stripe_payments.StripeConfigurationError) as exc:
        PAYMENT_INTENT_COUNT.labels(donation_type=donation.donation_type, status="failed").inc()
        _fail(scheduled, donation, f"Payment intent failed: {exc}")
        raise PaymentIntentFailed(str(exc)) from exc

    PAYMENT_INTENT_COUNT.labels(donation_type=donation.donation_type, status="created").inc()
    payment_intent_id = intent["payment_intent_id"]
    try:
        with transaction.atomic():
            donation.status = Donation.Status.PROCESSING
            donation.stripe_payment_intent_id = payment_intent_id
            donation.save(update_fields=["status", "stripe_payment_intent_id", "updated_at"])
            _advance(scheduled, occurrence, now)
            BillingAuditLog.objects.create(
                user_id=scheduled.user_id,
                event_type="scheduled.donation_initiated",
                stripe_id=payment_intent_id or "",
                actor="system",
                details={
                    "donation_id": str(donation.pk),
                    "scheduled_donation_id": scheduled.pk,
                    "occurrence": occurrence.isoformat(),
                    "total_amount": str(donation.total_amount),
                },
            )
    except DatabaseError as exc:
        logger.exception(
            "Payment intent %s created but scheduled donation %s could not be finalised",
            payment_intent_id,
            scheduled.pk,
        )
        # The donation stays pending, so the next run reuses its Stripe key.
        reason = f"Payment intent {payment_intent_id} created but bookkeeping failed: {exc}"
        _keep_intent(donation, payment_intent_id, reason)
        try:
            _release(scheduled, reason)
        except DatabaseError:
            logger.exception("Could not release scheduled donation %s", scheduled.pk)
        raise PaymentIntentFailed(str(exc)) from exc

    log_roundup_event(
        message="Scheduled donation initiated",
        user_id=scheduled.user_id,
        extra={
            "scheduled_donation_id": scheduled.pk,
            "donation_id": str(donation.pk),
            "payment_intent_id": intent["payment_intent_id"],
        },
    )
    return donation


def recover_stalled_schedules(now: Optional[datetime] = None) -> int:
    """Return schedules left in ``processing`` by an interrupted run to ``active``.

    The occurrence is not advanced. The next run either advances past a
    donation that was already charged or retries it with the same Stripe key.
    """

    now = now or timezone.now()
    stale_minutes = getattr(settings, "ROUNDUP_STALE_CLAIM_MINUTES", 60)
    cutoff = now - timedelta(minutes=stale_minutes)

    recovered = 0
    for scheduled in ScheduledDonation.objects.stalled(cutoff).order_by("pk"):
        released = ScheduledDonation.objects.filter(
            pk=scheduled.pk,
            status=ScheduledDonation.Status.PROCESSING,
            processing_started_at=scheduled.processing_started_at,
        ).update(
            status=ScheduledDonation.Status.ACTIVE,
            processing_started_at=None,
            last_failure_reason="claim expired",
            updated_at=now,
        )
        if not released:
            continue
        recovered += 1
        log_roundup_event(
            message="Stalled scheduled donation released",
            user_id=scheduled.user_id,
            level=logging.WARNING,
            extra={"scheduled_donation_id": scheduled.pk},
        )
    return recovered


def due_donations(now: Optional[datetime] = None):
    return ScheduledDonation.objects.due(now or timezone.now()).order_by("next_donation_date", "pk")
