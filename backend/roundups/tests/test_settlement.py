from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from django.db import DatabaseError
from django.utils import timezone

from billing.models import BillingAuditLog
from roundups.exceptions import PaymentIntentFailed
from roundups.models import Donation, RoundUpConfig, RoundUpTransaction
from roundups.services import detector, orchestrator, settlement


@pytest.fixture
def initiated(config, add_round_ups, donor_profile, payment_intent):
    """A threshold donation of 5.10 waiting for its payment outcome."""
    add_round_ups(config, "4.80", "0.30")
    detector.claim_and_trigger(config, Donation.Trigger.THRESHOLD)
    return Donation.objects.get(roundup_config=config)


@pytest.mark.django_db
def test_success_completes_donation_and_releases_config(config, initiated):
    donation = settlement.settle_payment_succeeded("pi_test_1")

    assert donation.pk == initiated.pk
    assert donation.status == Donation.Status.COMPLETED
    assert donation.completed_at is not None

    config.refresh_from_db()
    assert config.status == RoundUpConfig.Status.PENDING
    assert config.total_donated == Decimal("5.10")
    assert config.current_month_total == Decimal("0.00")
    assert config.last_month_reset is not None
    assert config.processing_started_at is None

    rows = RoundUpTransaction.objects.filter(donation=donation)
    assert rows.count() == 2
    assert all(row.status == RoundUpTransaction.Status.DONATED and row.donated_at for row in rows)
    assert BillingAuditLog.objects.filter(event_type="donation.completed").count() == 1


@pytest.mark.django_db
def test_success_is_idempotent(config, initiated):
    settlement.settle_payment_succeeded("pi_test_1")
    settlement.settle_payment_succeeded("pi_test_1")

    config.refresh_from_db()
    assert config.total_donated == Decimal("5.10")
    assert BillingAuditLog.objects.filter(event_type="donation.completed").count() == 1


@pytest.mark.django_db
def test_failure_restores_balance_and_releases_rows(config, initiated):
    donation = settlement.settle_payment_failed("pi_test_1", "insufficient funds")

    assert donation.status == Donation.Status.FAILED
    assert donation.failure_reason == "insufficient funds"

    config.refresh_from_db()
    assert config.status == RoundUpConfig.Status.FAILED
    assert config.current_month_total == Decimal("5.10")
    assert config.total_donated == Decimal("0.00")
    assert config.last_failure_reason == "insufficient funds"

    outstanding = RoundUpTransaction.objects.outstanding_for(config)
    assert outstanding.count() == 2
    assert all(row.last_payment_failure_reason == "insufficient funds" for row in outstanding)


@pytest.mark.django_db
def test_failure_is_idempotent_and_never_undoes_success(config, initiated):
    settlement.settle_payment_failed("pi_test_1", "declined")
    settlement.settle_payment_failed("pi_test_1", "declined")

    config.refresh_from_db()
    assert config.current_month_total == Decimal("5.10")

    other = Donation.objects.get(pk=initiated.pk)
    other.status = Donation.Status.COMPLETED
    other.save(update_fields=["status"])
    assert settlement.settle_payment_failed("pi_test_1", "late failure").status == Donation.Status.COMPLETED


@pytest.mark.django_db
def test_unknown_intent_returns_none(db):
    assert settlement.settle_payment_succeeded("pi_missing") is None
    assert settlement.settle_payment_failed("pi_missing", "declined") is None


@pytest.mark.django_db
def test_success_of_unlinked_donation_deducts_balance(config, add_round_ups, donor_profile, payment_intent):
    add_round_ups(config, "4.80", "0.30")
    detector.claim(config)
    with patch("roundups.services.orchestrator._finalise", side_effect=DatabaseError("lost")):
        with pytest.raises(PaymentIntentFailed):
            orchestrator.trigger_donation(config, list(RoundUpTransaction.objects.outstanding_for(config)))

    donation = settlement.settle_payment_succeeded("pi_test_1")

    assert donation.status == Donation.Status.COMPLETED
    config.refresh_from_db()
    assert config.current_month_total == Decimal("0.00")
    assert config.total_donated == Decimal("5.10")
    assert RoundUpTransaction.objects.filter(donation=donation, status=RoundUpTransaction.Status.DONATED).count() == 2


@pytest.mark.django_db
def test_reconcile_settles_from_intent_status(config, initiated):
    later = timezone.now() + timedelta(minutes=1)

    with patch(
        "billing.services.stripe_payments.retrieve_payment_intent",
        return_value={"id": "pi_test_1", "status": "succeeded"},
    ) as retrieve:
        result = settlement.reconcile_in_flight(older_than=later)

    retrieve.assert_called_once_with("pi_test_1")
    assert result.checked == 1
    assert result.succeeded == 1
    assert Donation.objects.get(pk=initiated.pk).status == Donation.Status.COMPLETED


@pytest.mark.django_db
def test_reconcile_fails_canceled_intents_and_waits_on_others(config, initiated):
    later = timezone.now() + timedelta(minutes=1)

    with patch("billing.services.stripe_payments.retrieve_payment_intent", return_value={"status": "processing"}):
        waiting = settlement.reconcile_in_flight(older_than=later)
    assert waiting.in_flight == 1

    intent = {"status": "requires_payment_method", "last_payment_error": {"message": "Your card was declined."}}
    with patch("billing.services.stripe_payments.retrieve_payment_intent", return_value=intent):
        failed = settlement.reconcile_in_flight(older_than=later)

    assert failed.failed == 1
    donation = Donation.objects.get(pk=initiated.pk)
    assert donation.status == Donation.Status.FAILED
    assert donation.failure_reason == "Your card was declined."


@pytest.mark.django_db
def test_reconcile_skips_recent_donations(config, initiated):
    with patch("billing.services.stripe_payments.retrieve_payment_intent") as retrieve:
        result = settlement.reconcile_in_flight()

    retrieve.assert_not_called()
    assert result.checked == 0


@pytest.mark.django_db
def test_stalled_claim_without_donation_is_released(config):
    stale = timezone.now() - timedelta(hours=3)
    RoundUpConfig.objects.filter(pk=config.pk).update(
        status=RoundUpConfig.Status.PROCESSING,
        processing_started_at=stale,
    )

    result = settlement.recover_stalled_claims()

    assert result.released == 1
    config.refresh_from_db()
    assert config.status == RoundUpConfig.Status.PENDING
    assert config.processing_started_at is None


@pytest.mark.django_db
def test_stalled_claim_with_pending_donation_is_resumed(config, add_round_ups, donor_profile, payment_intent):
    add_round_ups(config, "4.80", "0.30")
    detector.claim(config)
    rows = list(RoundUpTransaction.objects.outstanding_for(config))
    donation = orchestrator._create_pending_donation(
        config, donor_profile, rows, trigger=Donation.Trigger.THRESHOLD, today=timezone.localdate()
    )

    result = settlement.recover_stalled_claims(now=timezone.now() + timedelta(hours=3))

    assert result.resumed == 1
    donation.refresh_from_db()
    assert donation.status == Donation.Status.PROCESSING
    assert payment_intent.call_args.kwargs["idempotency_key"] == f"round_up-donation:{donation.pk}"
    config.refresh_from_db()
    assert config.current_month_total == Decimal("0.00")


@pytest.mark.django_db
def test_stalled_claim_with_processing_donation_keeps_waiting(config, initiated):
    result = settlement.recover_stalled_claims(now=timezone.now() + timedelta(hours=3))

    assert result.waiting == 1
    config.refresh_from_db()
    assert config.status == RoundUpConfig.Status.PROCESSING


@pytest.mark.django_db
def test_stalled_claim_with_resumed_donation_in_flight_keeps_waiting(config, add_round_ups, donor_profile, payment_intent):
    add_round_ups(config, "4.80", "0.30")
    with patch("roundups.services.orchestrator._finalise", side_effect=DatabaseError("connection lost")):
        with pytest.raises(PaymentIntentFailed):
            detector.claim_and_trigger(config, Donation.Trigger.THRESHOLD)
    donation = Donation.objects.get(roundup_config=config)

    # A later claim resumes the donation, which keeps its first claim's key.
    assert detector.claim(config, now=timezone.now() + timedelta(minutes=5))
    orchestrator.trigger_donation(config, [], trigger=Donation.Trigger.THRESHOLD)
    donation.refresh_from_db()
    assert donation.status == Donation.Status.PROCESSING
    assert donation.idempotency_key != orchestrator.claim_key(config)

    result = settlement.recover_stalled_claims(now=timezone.now() + timedelta(hours=3))

    assert result.waiting == 1
    assert result.released == 0
    config.refresh_from_db()
    assert config.status == RoundUpConfig.Status.PROCESSING
    assert not detector.claim(config)
    assert Donation.objects.filter(roundup_config=config).count() == 1
