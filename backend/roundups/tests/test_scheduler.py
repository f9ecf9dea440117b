from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest
from django.utils import timezone

from roundups.exceptions import BankSyncError
from roundups.models import BankConnection, Donation, JobDefinition, JobExecution, RoundUpConfig
from roundups.services import scheduler
from roundups.services.bank_sync import SyncResult
from roundups.services.calculator import RawTransaction

MID_MONTH = date(2025, 3, 12)
MONTH_START = date(2025, 4, 1)


def _sync(*transactions, cursor="cursor-2"):
    return SyncResult(added=list(transactions), next_cursor=cursor)


def _raw(tx_id, amount):
    return RawTransaction(id=tx_id, amount=Decimal(amount), date=MID_MONTH, name="Bakery", category=("Food and Drink",))


@pytest.fixture
def mid_month():
    with patch.object(timezone, "localdate", return_value=MID_MONTH):
        yield


@pytest.fixture
def month_start():
    with patch.object(timezone, "localdate", return_value=MONTH_START):
        yield


@pytest.fixture
def bank_sync():
    with patch("roundups.services.bank_sync.sync_transactions") as mocked:
        mocked.return_value = _sync()
        yield mocked


@pytest.mark.django_db
def test_job_lock_is_single_flight():
    first = scheduler.JobLock("test-job")
    second = scheduler.JobLock("test-job")

    assert first.acquire()
    assert not second.acquire()
    second.release()
    assert first.is_held

    first.release()
    assert not first.is_held
    with second as acquired:
        assert acquired
    assert not second.is_held


@pytest.mark.django_db
def test_threshold_is_reached_during_a_run(config, add_round_ups, donor_profile, payment_intent, bank_sync, mid_month):
    add_round_ups(config, "0.80", "0.50", "0.50", "0.50", "0.50", "0.50", "0.50", "0.50", "0.50")
    bank_sync.return_value = _sync(_raw("tx-new", "-3.70"))

    summary = scheduler.roundup_processing_job.run()

    assert summary.error is None
    assert summary.total_processed == 1
    assert summary.success_count == 1
    assert summary.failure_count == 0
    assert summary.details["donations_triggered"] == 1

    donation = Donation.objects.get(roundup_config=config)
    assert donation.amount == Decimal("5.10")
    assert donation.trigger == Donation.Trigger.THRESHOLD
    config.refresh_from_db()
    assert config.status == RoundUpConfig.Status.PROCESSING
    assert config.current_month_total == Decimal("0.00")

    connection = BankConnection.objects.get(pk=config.bank_connection_id)
    assert connection.sync_cursor == "cursor-2"
    assert connection.last_synced_at is not None

    execution = JobExecution.objects.get(job__name="roundup-transactions-main")
    assert execution.status == JobExecution.Status.COMPLETED
    assert execution.success_count == 1
    assert JobDefinition.objects.get(name="roundup-transactions-main").last_status == JobDefinition.LastStatus.COMPLETED


@pytest.mark.django_db
def test_month_end_sweep_wins_over_threshold_on_the_first(
    config, add_round_ups, donor_profile, payment_intent, bank_sync, month_start
):
    add_round_ups(config, "4.80", "0.30")

    summary = scheduler.roundup_processing_job.run()

    assert summary.error is None
    assert summary.details["month_end"]["succeeded"] == 1
    assert summary.details["donations_triggered"] == 1
    assert payment_intent.call_count == 1

    donation = Donation.objects.get(roundup_config=config)
    assert donation.trigger == Donation.Trigger.MONTH_END
    assert donation.amount == Decimal("5.10")
    assert donation.metadata["month"] == "2025-03"


@pytest.mark.django_db
def test_no_limit_config_is_settled_by_the_month_end_run(
    make_config, add_round_ups, donor_profile, payment_intent, bank_sync, month_start
):
    config = make_config(threshold_amount=None)
    add_round_ups(config, *["0.95"] * 13)

    summary = scheduler.roundup_processing_job.run()

    assert summary.error is None
    assert payment_intent.call_count == 1
    donation = Donation.objects.get(roundup_config=config)
    assert donation.trigger == Donation.Trigger.MONTH_END
    assert donation.amount == Decimal("12.35")
    assert donation.metadata["month"] == "2025-03"
    config.refresh_from_db()
    assert config.status == RoundUpConfig.Status.PROCESSING
    assert config.current_month_total == Decimal("0.00")


@pytest.mark.django_db
def test_no_limit_config_is_not_settled_mid_month(
    make_config, add_round_ups, donor_profile, payment_intent, bank_sync, mid_month
):
    config = make_config(threshold_amount=None)
    add_round_ups(config, *["0.95"] * 13)

    scheduler.roundup_processing_job.run()

    payment_intent.assert_not_called()
    assert not Donation.objects.exists()


@pytest.mark.django_db
def test_overlapping_tick_is_skipped(config, add_round_ups, donor_profile, payment_intent, bank_sync, mid_month):
    add_round_ups(config, "4.80", "0.30")
    held = scheduler.roundup_processing_job.lock()
    assert held.acquire()
    try:
        summary = scheduler.roundup_processing_job.run()
    finally:
        held.release()

    assert summary.skipped
    assert summary.total_processed == 0
    bank_sync.assert_not_called()
    payment_intent.assert_not_called()
    config.refresh_from_db()
    assert config.status == RoundUpConfig.Status.PENDING
    assert config.current_month_total == Decimal("5.10")
    assert JobExecution.objects.get(job__name="roundup-transactions-main").status == JobExecution.Status.SKIPPED


@pytest.mark.django_db
def test_bank_sync_failure_is_isolated_per_config(make_config, user, donor_profile, payment_intent, bank_sync, mid_month):
    broken = make_config(organization_ref="org-broken")
    other_connection = BankConnection.objects.create(user=user, plaid_item_id="item-2", access_token="access-2")
    healthy = make_config(organization_ref="org-healthy", bank_connection=other_connection)

    def fake_sync(user_id, bank_connection_id):
        if bank_connection_id == broken.bank_connection_id:
            raise BankSyncError("Plaid unreachable")
        return _sync(_raw("tx-ok", "-1.25"), cursor="cursor-ok")

    bank_sync.side_effect = fake_sync

    summary = scheduler.roundup_processing_job.run()

    assert summary.total_processed == 2
    assert summary.success_count == 1
    assert summary.failure_count == 1
    healthy.refresh_from_db()
    assert healthy.current_month_total == Decimal("0.75")
    assert BankConnection.objects.get(pk=broken.bank_connection_id).sync_cursor == ""


@pytest.mark.django_db
def test_cursor_is_not_committed_when_rows_fail(config, bank_sync, mid_month):
    bank_sync.return_value = _sync(_raw("tx-1", "-1.25"))
    failed_ledger = scheduler.ledger.LedgerResult(processed=0, skipped=0, failed=1, new_total=Decimal("0.00"))

    with patch("roundups.services.ledger.apply_transactions", return_value=failed_ledger):
        summary = scheduler.roundup_processing_job.run()

    assert summary.failure_count == 1
    assert BankConnection.objects.get(pk=config.bank_connection_id).sync_cursor == ""


@pytest.mark.django_db
def test_processing_configs_are_not_synced(config, bank_sync, mid_month):
    RoundUpConfig.objects.filter(pk=config.pk).update(
        status=RoundUpConfig.Status.PROCESSING,
        processing_started_at=timezone.now(),
    )

    summary = scheduler.roundup_processing_job.run()

    assert summary.total_processed == 0
    bank_sync.assert_not_called()


@pytest.mark.django_db
def test_run_level_error_is_recorded_not_raised(bank_sync):
    with patch.object(scheduler.RoundUpProcessingJob, "execute", side_effect=RuntimeError("database went away")):
        summary = scheduler.roundup_processing_job.run()

    assert summary.error == "database went away"
    execution = JobExecution.objects.get(job__name="roundup-transactions-main")
    assert execution.status == JobExecution.Status.FAILED
    assert execution.error_message == "database went away"
    assert not scheduler.roundup_processing_job.lock().is_held


@pytest.mark.django_db
def test_manual_trigger_reports_counts(config, bank_sync, mid_month):
    result = scheduler.roundup_processing_job.manual_trigger()

    assert result["success"] is True
    assert result["total_processed"] == 1
    assert "processed 1 item" in result["message"]
    assert JobExecution.objects.get(job__name="roundup-transactions-main").trigger == JobExecution.Trigger.MANUAL


def test_get_job_rejects_unknown_names():
    assert scheduler.get_job("scheduled-donations") is scheduler.scheduled_donation_job
    with pytest.raises(LookupError):
        scheduler.get_job("nope")
