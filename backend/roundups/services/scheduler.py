"""Single-flight recurring jobs for the round-up pipeline.

Each job runs under a cache-backed lock so overlapping ticks skip instead of
processing the same configs twice. Every run, skipped or not, is recorded
through :mod:`roundups.services.tracker`.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from billing.observability.metrics import ROUNDUP_JOB_DURATION, ROUNDUP_JOB_RUNS
from billing.services.donors import DonorNotFound
from roundups.exceptions import RoundUpError
from roundups.models import Donation, JobExecution, RoundUpConfig
from roundups.services import bank_sync, detector, ledger, scheduled_donations, settlement, tracker

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "roundups:job-lock:"


class JobLock:
    """Cache-backed mutual exclusion between ticks of the same job.

    ``cache.add`` only writes when the key is absent, and the lock is released
    only by the holder of the token it was acquired with.
    """

    def __init__(self, name: str, timeout: Optional[int] = None):
        self.key = f"{LOCK_KEY_PREFIX}{name}"
        self.timeout = timeout or getattr(settings, "ROUNDUP_JOB_LOCK_TIMEOUT", 3600)
        self.token: Optional[str] = None

    def acquire(self) -> bool:
        token = uuid.uuid4().hex
        if cache.add(self.key, token, self.timeout):
            self.token = token
            return True
        return False

    def release(self) -> None:
        if self.token is None:
            return
        if cache.get(self.key) == self.token:
            cache.delete(self.key)
        self.token = None

    @property
    def is_held(self) -> bool:
        return cache.get(self.key) is not None

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class ExecutionSummary:
    total_processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped: bool = False
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "skipped": self.skipped,
            "error": self.error,
            "details": self.details,
        }


class JobScheduler:
    """Base class for a named, cron-scheduled job.

    Subclasses implement :meth:`execute`; :meth:`run` wraps it with the lock,
    execution tracking and metrics and never raises.
    """

    job_name: str = ""
    schedule: str = ""
    description: str = ""

    def lock(self) -> JobLock:
        return JobLock(self.job_name)

    def register(self):
        return tracker.register_job(self.job_name, self.schedule, self.description)

    def execute(self) -> ExecutionSummary:
        raise NotImplementedError

    def run(self, trigger: str = JobExecution.Trigger.SCHEDULED) -> ExecutionSummary:
        started = time.monotonic()
        try:
            with self.lock() as acquired:
                if not acquired:
                    return self._skip(trigger)
                return self._run_locked(trigger)
        except Exception as exc:
            logger.exception("Job %s could not run", self.job_name)
            ROUNDUP_JOB_RUNS.labels(job=self.job_name, status="failed").inc()
            return ExecutionSummary(error=str(exc))
        finally:
            ROUNDUP_JOB_DURATION.labels(job=self.job_name).observe(time.monotonic() - started)

    def _skip(self, trigger: str) -> ExecutionSummary:
        logger.info("Job %s is already running; skipping this tick.", self.job_name)
        tracker.record_skipped(self.job_name, trigger, "Previous execution still holds the job lock.")
        ROUNDUP_JOB_RUNS.labels(job=self.job_name, status="skipped").inc()
        return ExecutionSummary(skipped=True)

    def _run_locked(self, trigger: str) -> ExecutionSummary:
        execution = tracker.start_execution(self.job_name, trigger)
        try:
            summary = self.execute()
        except Exception as exc:
            logger.exception("Job %s failed", self.job_name)
            tracker.fail_execution(execution, str(exc))
            ROUNDUP_JOB_RUNS.labels(job=self.job_name, status="failed").inc()
            return ExecutionSummary(error=str(exc))

        tracker.complete_execution(execution, summary)
        ROUNDUP_JOB_RUNS.labels(job=self.job_name, status="completed").inc()
        logger.info(
            "Job %s completed: processed=%s succeeded=%s failed=%s",
            self.job_name,
            summary.total_processed,
            summary.success_count,
            summary.failure_count,
        )
        return summary

    def manual_trigger(self) -> Dict[str, Any]:
        """Run the job now on behalf of an administrator."""
        summary = self.run(trigger=JobExecution.Trigger.MANUAL)
        if summary.skipped:
            message = f"{self.job_name} is already running."
        elif summary.error:
            message = f"{self.job_name} failed: {summary.error}"
        else:
            message = (
                f"{self.job_name} processed {summary.total_processed} item(s): "
                f"{summary.success_count} succeeded, {summary.failure_count} failed."
            )
        return {
            "success": not summary.skipped and summary.error is None,
            "total_processed": summary.total_processed,
            "success_count": summary.success_count,
            "failure_count": summary.failure_count,
            "message": message,
        }


@dataclass(frozen=True)
class ConfigOutcome:
    ledger: ledger.LedgerResult
    donation: Optional[Donation] = None
    cursor_committed: bool = True

    @property
    def ok(self) -> bool:
        return self.ledger.failed == 0


class RoundUpProcessingJob(JobScheduler):
    job_name = "roundup-transactions-main"
    schedule = "0 */4 * * *"
    description = "Sync bank transactions, accumulate round-ups and trigger donations."

    def process_config(self, config: RoundUpConfig, *, today: date) -> ConfigOutcome:
        """Sync, accumulate and evaluate one config."""
        sync = bank_sync.sync_transactions(config.user_id, config.bank_connection_id)
        result = ledger.apply_transactions(config, sync.added)

        committed = result.failed == 0
        if committed:
            bank_sync.commit_cursor(config.bank_connection, sync.next_cursor)
        else:
            logger.warning(
                "Not advancing sync cursor for bank connection %s: %s transaction(s) failed to apply.",
                config.bank_connection_id,
                result.failed,
            )

        donation = None
        if detector.should_trigger_threshold(config):
            donation = detector.claim_and_trigger(config, Donation.Trigger.THRESHOLD, today=today)
        return ConfigOutcome(ledger=result, donation=donation, cursor_committed=committed)

    def execute(self) -> ExecutionSummary:
        today = timezone.localdate()
        summary = ExecutionSummary()

        recovery = settlement.recover_stalled_claims()
        sweep = detector.sweep_month_end(today)
        summary.total_processed += len(sweep.attempted)
        summary.success_count += sweep.succeeded
        summary.failure_count += sweep.failed

        processed = applied = triggered = 0
        configs = (
            RoundUpConfig.objects.syncable()
            .exclude(pk__in=sweep.attempted)
            .select_related("bank_connection")
            .order_by("pk")
        )
        for config in configs:
            summary.total_processed += 1
            try:
                outcome = self.process_config(config, today=today)
            except (RoundUpError, DonorNotFound) as exc:
                summary.failure_count += 1
                logger.warning("Round-up config %s failed: %s", config.pk, exc)
                continue
            except Exception:
                summary.failure_count += 1
                logger.exception("Unexpected error processing round-up config %s", config.pk)
                continue

            processed += 1
            applied += outcome.ledger.processed
            if outcome.donation is not None:
                triggered += 1
            if outcome.ok:
                summary.success_count += 1
            else:
                summary.failure_count += 1

        summary.details = {
            "recovery": recovery.as_dict(),
            "month_end": sweep.as_dict(),
            "configs_synced": processed,
            "transactions_applied": applied,
            "donations_triggered": triggered + sweep.succeeded,
        }
        return summary


class ScheduledDonationJob(JobScheduler):
    job_name = "scheduled-donations"
    schedule = "0 * * * *"
    description = "Charge recurring donations whose next occurrence is due."

    def execute(self) -> ExecutionSummary:
        now = timezone.now()
        summary = ExecutionSummary()
        recovered = scheduled_donations.recover_stalled_schedules(now)
        skipped = 0
        for scheduled in scheduled_donations.due_donations(now):
            summary.total_processed += 1
            try:
                donation = scheduled_donations.execute_scheduled_donation(scheduled, now=now)
            except (RoundUpError, DonorNotFound) as exc:
                summary.failure_count += 1
                logger.warning("Scheduled donation %s failed: %s", scheduled.pk, exc)
                continue
            except Exception:
                summary.failure_count += 1
                logger.exception("Unexpected error executing scheduled donation %s", scheduled.pk)
                continue
            if donation is None:
                skipped += 1
            else:
                summary.success_count += 1
        summary.details = {"recovered": recovered, "skipped": skipped}
        return summary


roundup_processing_job = RoundUpProcessingJob()
scheduled_donation_job = ScheduledDonationJob()

JOBS: Dict[str, JobScheduler] = {
    job.job_name: job for job in (roundup_processing_job, scheduled_donation_job)
}


def get_job(name: str) -> JobScheduler:
    try:
        return JOBS[name]
    except KeyError:
        raise LookupError(f"Unknown job: {name}") from None


def register_jobs() -> None:
    for job in JOBS.values():
        job.register()
