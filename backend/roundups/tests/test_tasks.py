from io import StringIO
from unittest.mock import patch

import pytest
from django.core.management import CommandError, call_command

from backend.celery import app
from roundups import tasks
from roundups.services.scheduler import ExecutionSummary
from roundups.services.settlement import ReconcileResult


def test_beat_schedule_runs_pipeline_every_four_hours():
    entry = app.conf.beat_schedule["roundup_transactions_every_4_hours"]

    assert entry["task"] == "roundups.tasks.process_roundup_transactions"
    assert entry["schedule"].hour == {0, 4, 8, 12, 16, 20}
    assert entry["schedule"].minute == {0}
    assert app.conf.task_routes["roundups.tasks.process_roundup_transactions"] == {"queue": "roundups"}


def test_process_roundup_transactions_returns_summary():
    summary = ExecutionSummary(total_processed=2, success_count=1, failure_count=1)
    with patch.object(tasks.roundup_processing_job, "run", return_value=summary):
        result = tasks.process_roundup_transactions()

    assert result["total_processed"] == 2
    assert result["failure_count"] == 1
    assert result["skipped"] is False


def test_reconcile_task_returns_counts():
    with patch("roundups.services.settlement.reconcile_in_flight", return_value=ReconcileResult(checked=1, succeeded=1)):
        result = tasks.reconcile_in_flight_donations()

    assert result == {"checked": 1, "succeeded": 1, "failed": 0, "in_flight": 0, "errors": 0}


@pytest.mark.django_db
def test_run_roundup_job_command_lists_jobs():
    out = StringIO()
    call_command("run_roundup_job", stdout=out)

    assert "roundup-transactions-main" in out.getvalue()
    assert "scheduled-donations" in out.getvalue()


@pytest.mark.django_db
def test_run_roundup_job_command_runs_job():
    out = StringIO()
    call_command("run_roundup_job", "scheduled-donations", stdout=out)

    assert "scheduled-donations processed 0 item(s)" in out.getvalue()


@pytest.mark.django_db
def test_run_roundup_job_command_rejects_unknown_job():
    with pytest.raises(CommandError):
        call_command("run_roundup_job", "nope")
