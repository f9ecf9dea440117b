"""Turn a claimed round-up balance into a Donation and a Stripe payment intent.

Steps run in order: resolve the donor, persist a pending Donation, request the
payment intent, then record the intent on the donation, the config and the
batch rows in one atomic block. Any failure marks the config ``failed`` and
leaves ``current_month_total`` as it was.
"""
from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.models import BillingAuditLog, UserBillingProfile
from billing.observability.logging import log_roundup_event
from billing.observability.metrics import PAYMENT_INTENT_COUNT, ROUNDUP_DONATIONS_TRIGGERED
from billing.services import stripe_payments
from billing.services.donors import DonorNotFound, find_donor
from billing.services.tax import calculate_tax
from roundups.exceptions import ConfigNotClaimable, EmptyTransactionBatch, PaymentIntentFailed
from roundups.models import Donation, RoundUpConfig, RoundUpTransaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def period_for(trigger: str, today: date) -> date:
    """First day of the billing month a trigger settles.

    The month-end sweep runs on the 1st and settles the month that just ended.
    """
    if trigger == Donation.Trigger.MONTH_END:
        previous_month_end = today.replace(day=1) - timedelta(days=1)
        return previous_month_end.replace(day=1)
    return today.replace(day=1)


def claim_key(config: RoundUpConfig) -> str:
    """Idempotency key of the Donation owned by the config's current claim."""
    stamp = config.processing_started_at
    if stamp is None:
        raise ConfigNotClaimable(f"Round-up config {config.pk} has no processing claim.")
    return f"roundup:{config.pk}:{stamp.strftime('%Y%m%dT%H%M%S%f')}"


def payment_idempotency_key(donation: Donation) -> str:
    return f"{donation.donation_type}-donation:{donation.pk}"


def unfinished_donation(config: RoundUpConfig) -> Optional[Donation]:
    """Oldest pending round-up donation of ``config`` whose bookkeeping never completed."""
    return (
        Donation.objects.filter(
            roundup_config=config,
            donation_type=Donation.DonationType.ROUND_UP,
            status=Donation.Status.PENDING,
        )
        .order_by("created_at")
        .first()
    )


def trigger_donation(
    config: RoundUpConfig,
    batch: Iterable[RoundUpTransaction],
    *,
    trigger: str = Donation.Trigger.THRESHOLD,
    today: Optional[date] = None,
) -> Donation:
    """Create the donation for a claimed config and request its payment intent.

    ``config`` must already be ``processing`` (see ``detector.claim``). When a
    previous attempt left a pending donation behind, that donation and its
    recorded batch are resumed instead of creating a second one.
    """

    if config.status != RoundUpConfig.Status.PROCESSING:
        raise ConfigNotClaimable(f"Round-up config {config.pk} is {config.status}, not processing.")

    today = today or timezone.localdate()
    rows: List[RoundUpTransaction] = list(batch)

    donation = unfinished_donation(config)
    if donation is not None:
        rows = list(RoundUpTransaction.objects.filter(pk__in=donation.round_up_transaction_ids))
        logger.info("Resuming pending donation %s for round-up config %s.", donation.pk, config.pk)

    if not rows or config.current_month_total <= ZERO:
        reason = "No outstanding round-up transactions to donate."
        _record_failure(config, donation, reason, trigger=trigger)
        raise EmptyTransactionBatch(f"{reason} (config {config.pk})")

    try:
        donor = find_donor(config.user_id)
    except DonorNotFound as exc:
        _record_failure(config, donation, str(exc), trigger=trigger)
        raise

    if donation is None:
        donation = _create_pending_donation(config, donor, rows, trigger=trigger, today=today)

    try:
        intent = stripe_payments.create_payment_intent(
            amount=donation.total_amount,
            currency=donation.currency,
            customer_id=donor.stripe_customer_id,
            payment_method_id=donor.default_payment_method_id,
            idempotency_key=payment_idempotency_key(donation),
            metadata=_intent_metadata(config, donation),
            description=f"Round-up donation {donation.metadata.get('month', '')}".strip(),
        )
    except (stripe_payments.StripeServiceError, stripe_payments.StripeConfigurationError) as exc:
        PAYMENT_INTENT_COUNT.labels(donation_type=donation.donation_type, status="failed").inc()
        declined_intent = getattr(exc, "payment_intent_id", None)
        _record_failure(config, donation, f"Payment intent failed: {exc}", trigger=trigger, payment_intent_id=declined_intent)
        raise PaymentIntentFailed(str(exc)) from exc

    PAYMENT_INTENT_COUNT.labels(donation_type=donation.donation_type, status="created").inc()
    payment_intent_id = intent["payment_intent_id"]

    try:
        _finalise(config, donation, rows, payment_intent_id)
    except DatabaseError as exc:
        logger.exception("Failed to record payment intent %s for donation %s", payment_intent_id, donation.pk)
        _remember_intent(donation, payment_intent_id, str(exc))
        _record_failure(config, None, f"Payment intent {payment_intent_id} created but bookkeeping failed: {exc}", trigger=trigger)
        raise PaymentIntentFailed(str(exc)) from exc

    ROUNDUP_DONATIONS_TRIGGERED.labels(trigger=str(trigger), outcome="initiated").inc()
    log_roundup_event(
        message="Round-up donation initiated",
        config_id=config.pk,
        user_id=config.user_id,
        extra={
            "donation_id": str(donation.pk),
            "payment_intent_id": payment_intent_id,
            "amount": str(donation.amount),
            "total_amount": str(donation.total_amount),
            "transaction_count": len(rows),
            "trigger": str(trigger),
        },
    )
    return donation


def _create_pending_donation(
    config: RoundUpConfig,
    donor: UserBillingProfile,
    rows: List[RoundUpTransaction],
    *,
    trigger: str,
    today: date,
) -> Donation:
    breakdown = calculate_tax(config.current_month_total, config.is_taxable)
    period = period_for(trigger, today)
    donation, created = Donation.objects.get_or_create(
        idempotency_key=claim_key(config),
        defaults={
            "donor": donor,
            "user_id": config.user_id,
            "organization_ref": config.organization_ref,
            "cause_ref": config.cause_ref,
            "donation_type": Donation.DonationType.ROUND_UP,
            "trigger": trigger,
            "roundup_config": config,
            "amount": breakdown.amount,
            "tax_amount": breakdown.tax_amount,
            "total_amount": breakdown.total_amount,
            "status": Donation.Status.PENDING,
            "round_up_transaction_ids": [row.pk for row in rows],
            "special_message": config.special_message,
            "metadata": {
                "type": "roundup_donation",
                "month": period.strftime("%Y-%m"),
                "year": period.year,
                "trigger": trigger,
                "is_month_end": trigger == Donation.Trigger.MONTH_END,
                "transaction_count": len(rows),
            },
        },
    )
    if not created:
        logger.info("Reusing donation %s for claim %s.", donation.pk, donation.idempotency_key)
    return donation


def _intent_metadata(config: RoundUpConfig, donation: Donation) -> dict:
    return {
        "donation_id": donation.pk,
        "roundup_config_id": config.pk,
        "user_id": config.user_id,
        "organization_id": config.organization_ref,
        "cause_id": config.cause_ref,
        "donation_type": "roundup",
        "month": donation.metadata.get("month"),
        "year": donation.metadata.get("year"),
        "base_amount": donation.amount,
        "is_taxable": config.is_taxable,
        "tax_amount": donation.tax_amount,
        "total_amount": donation.total_amount,
    }


def _finalise(
    config: RoundUpConfig,
    donation: Donation,
    rows: List[RoundUpTransaction],
    payment_intent_id: str,
) -> None:
    now = timezone.now()
    with transaction.atomic():
        donation.status = Donation.Status.PROCESSING
        donation.stripe_payment_intent_id = payment_intent_id
        donation.failure_reason = ""
        donation.save(update_fields=["status", "stripe_payment_intent_id", "failure_reason", "updated_at"])

        locked = RoundUpConfig.objects.select_for_update().get(pk=config.pk)
        locked.status = RoundUpConfig.Status.PROCESSING
        locked.current_month_total = max(locked.current_month_total - donation.amount, ZERO)
        locked.last_donation_attempt = now
        locked.save(update_fields=["status", "current_month_total", "last_donation_attempt", "updated_at"])

        RoundUpTransaction.objects.filter(pk__in=[row.pk for row in rows]).update(
            stripe_payment_intent_id=payment_intent_id,
            donation=donation,
            donation_attempted_at=now,
        )

        BillingAuditLog.objects.create(
            user_id=config.user_id,
            event_type="roundup.donation_initiated",
            stripe_id=payment_intent_id,
            actor="system",
            details={
                "donation_id": str(donation.pk),
                "roundup_config_id": config.pk,
                "amount": str(donation.amount),
                "total_amount": str(donation.total_amount),
                "transaction_ids": donation.round_up_transaction_ids,
            },
        )

    config.refresh_from_db()


def _remember_intent(donation: Donation, payment_intent_id: str, reason: str) -> None:
    try:
        Donation.objects.filter(pk=donation.pk, stripe_payment_intent_id__isnull=True).update(
            stripe_payment_intent_id=payment_intent_id,
            failure_reason=reason[:1000],
            updated_at=timezone.now(),
        )
    except DatabaseError:
        logger.exception("Could not attach payment intent %s to donation %s", payment_intent_id, donation.pk)


def _record_failure(
    config: RoundUpConfig,
    donation: Optional[Donation],
    reason: str,
    *,
    trigger: str,
    payment_intent_id: Optional[str] = None,
) -> None:
    if donation is not None and donation.status == Donation.Status.PENDING:
        donation.status = Donation.Status.FAILED
        donation.failure_reason = reason[:1000]
        update_fields = ["status", "failure_reason", "updated_at"]
        if payment_intent_id and not donation.stripe_payment_intent_id:
            donation.stripe_payment_intent_id = payment_intent_id
            update_fields.append("stripe_payment_intent_id")
        donation.save(update_fields=update_fields)

    config.mark_as_failed(reason)

    BillingAuditLog.objects.create(
        user_id=config.user_id,
        event_type="roundup.donation_failed",
        stripe_id=payment_intent_id or "",
        actor="system",
        details={
            "roundup_config_id": config.pk,
            "donation_id": str(donation.pk) if donation is not None else None,
            "reason": reason,
            "current_month_total": str(config.current_month_total),
        },
    )
    ROUNDUP_DONATIONS_TRIGGERED.labels(trigger=str(trigger), outcome="failed").inc()
    log_roundup_event(
        message="Round-up donation trigger failed",
        config_id=config.pk,
        user_id=config.user_id,
        level=logging.WARNING,
        extra={"reason": reason, "trigger": str(trigger)},
    )
