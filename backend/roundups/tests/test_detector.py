from datetime import date
from decimal import Decimal

import pytest

from roundups.models import Donation, RoundUpConfig
from roundups.services import detector


@pytest.mark.django_db
def test_threshold_triggers_at_or_above_amount(config):
    config.current_month_total = Decimal("4.99")
    assert not detector.should_trigger_threshold(config)

    config.current_month_total = Decimal("5.00")
    assert detector.should_trigger_threshold(config)


@pytest.mark.django_db
def test_unlimited_threshold_never_triggers_mid_cycle(make_config):
    config = make_config(threshold_amount=None, current_month_total=Decimal("900.00"))

    assert not detector.should_trigger_threshold(config)
    assert detector.evaluate(config, today=date(2025, 3, 15)) is None
    assert detector.evaluate(config, today=date(2025, 4, 1)) == Donation.Trigger.MONTH_END


@pytest.mark.django_db
def test_processing_config_is_never_triggered(config):
    config.current_month_total = Decimal("50.00")
    config.status = RoundUpConfig.Status.PROCESSING

    assert not detector.should_trigger_threshold(config)
    assert not detector.should_sweep_month_end(config, date(2025, 4, 1))


@pytest.mark.django_db
def test_failed_config_is_retried(config):
    config.current_month_total = Decimal("6.00")
    config.status = RoundUpConfig.Status.FAILED

    assert detector.should_trigger_threshold(config)


def test_sweep_day_is_first_of_month():
    assert detector.is_month_end_sweep_day(date(2025, 4, 1))
    assert not detector.is_month_end_sweep_day(date(2025, 3, 31))


@pytest.mark.django_db
def test_claim_succeeds_once(config):
    other = RoundUpConfig.objects.get(pk=config.pk)

    assert detector.claim(config)
    assert config.status == RoundUpConfig.Status.PROCESSING
    assert config.processing_started_at is not None

    assert not detector.claim(other)


@pytest.mark.django_db
def test_sweep_outside_first_of_month_does_nothing(make_config, add_round_ups, donor_profile, payment_intent):
    config = make_config(threshold_amount=None)
    add_round_ups(config, "0.35")

    result = detector.sweep_month_end(date(2025, 4, 2))

    assert result.attempted == []
    payment_intent.assert_not_called()


@pytest.mark.django_db
def test_month_end_sweep_donates_residual_balance(make_config, add_round_ups, donor_profile, payment_intent):
    config = make_config(threshold_amount=None)
    add_round_ups(config, "0.35", "0.99", "0.01", "0.50", "0.50")
    RoundUpConfig.objects.filter(pk=config.pk).update(current_month_total=Decimal("12.35"))

    result = detector.sweep_month_end(date(2025, 4, 1))

    assert result.attempted == [config.pk]
    assert result.succeeded == 1
    donation = Donation.objects.get(roundup_config=config)
    assert donation.amount == Decimal("12.35")
    assert donation.trigger == Donation.Trigger.MONTH_END
    assert donation.status == Donation.Status.PROCESSING
    assert donation.metadata["month"] == "2025-03"
    assert donation.metadata["is_month_end"] is True

    config.refresh_from_db()
    assert config.current_month_total == Decimal("0.00")
    assert config.status == RoundUpConfig.Status.PROCESSING


@pytest.mark.django_db
def test_month_end_sweep_runs_once_per_month(make_config, add_round_ups, donor_profile, payment_intent):
    config = make_config(threshold_amount=None)
    add_round_ups(config, "0.35")
    detector.sweep_month_end(date(2025, 4, 1))

    # Settled, then more spend arrives later the same day.
    RoundUpConfig.objects.filter(pk=config.pk).update(status=RoundUpConfig.Status.PENDING, processing_started_at=None)
    add_round_ups(RoundUpConfig.objects.get(pk=config.pk), "0.60")

    result = detector.sweep_month_end(date(2025, 4, 1))

    assert result.attempted == []
    assert Donation.objects.filter(roundup_config=config).count() == 1


@pytest.mark.django_db
def test_claim_and_trigger_returns_none_when_claim_is_lost(config, add_round_ups, donor_profile, payment_intent):
    add_round_ups(config, "0.80")
    RoundUpConfig.objects.filter(pk=config.pk).update(status=RoundUpConfig.Status.PROCESSING)

    assert detector.claim_and_trigger(config, Donation.Trigger.THRESHOLD) is None
    payment_intent.assert_not_called()
