"""Persisted execution history for the recurring round-up jobs."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db.models import Avg, Count, Q, Sum
from django.utils import timezone

from roundups.models import JobDefinition, JobExecution

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def register_job(name: str, schedule: str, description: str = "") -> JobDefinition:
    """Create the job definition or refresh its schedule and description."""
    job, created = JobDefinition.objects.get_or_create(
        name=name,
        defaults={"schedule": schedule, "description": description},
    )
    if not created and (job.schedule != schedule or job.description != description):
        job.schedule = schedule
        job.description = description
        job.save(update_fields=["schedule", "description", "updated_at"])
    if created:
        logger.info("Registered job definition %s (%s).", name, schedule)
    return job


def _job(job_name: str) -> JobDefinition:
    job, _ = JobDefinition.objects.get_or_create(name=job_name, defaults={"schedule": ""})
    return job


def start_execution(job_name: str, trigger: str = JobExecution.Trigger.SCHEDULED) -> JobExecution:
    now = timezone.now()
    job = _job(job_name)
    execution = JobExecution.objects.create(job=job, trigger=trigger, started_at=now)
    JobDefinition.objects.filter(pk=job.pk).update(
        last_status=JobDefinition.LastStatus.RUNNING,
        last_started_at=now,
        updated_at=now,
    )
    return execution


def _finish(execution: JobExecution, status: str) -> None:
    now = timezone.now()
    execution.status = status
    execution.finished_at = now
    execution.duration_ms = max(int((now - execution.started_at).total_seconds() * 1000), 0)


def complete_execution(execution: JobExecution, summary) -> JobExecution:
    """Close ``execution`` with the counters of an ``ExecutionSummary``."""
    _finish(execution, JobExecution.Status.COMPLETED)
    execution.total_processed = summary.total_processed
    execution.success_count = summary.success_count
    execution.failure_count = summary.failure_count
    execution.details = summary.details or {}
    execution.save(
        update_fields=[
            "status",
            "finished_at",
            "duration_ms",
            "total_processed",
            "success_count",
            "failure_count",
            "details",
        ]
    )
    JobDefinition.objects.filter(pk=execution.job_id).update(
        last_status=JobDefinition.LastStatus.COMPLETED,
        last_completed_at=execution.finished_at,
        last_total_processed=summary.total_processed,
        last_success_count=summary.success_count,
        last_failure_count=summary.failure_count,
        last_failure_reason="",
        updated_at=execution.finished_at,
    )
    return execution


def fail_execution(execution: JobExecution, reason: str) -> JobExecution:
    _finish(execution, JobExecution.Status.FAILED)
    execution.error_message = reason or ""
    execution.save(update_fields=["status", "finished_at", "duration_ms", "error_message"])
    JobDefinition.objects.filter(pk=execution.job_id).update(
        last_status=JobDefinition.LastStatus.FAILED,
        last_completed_at=execution.finished_at,
        last_failure_reason=reason or "",
        updated_at=execution.finished_at,
    )
    return execution


def record_skipped(job_name: str, trigger: str = JobExecution.Trigger.SCHEDULED, reason: str = "") -> JobExecution:
    """Record a tick that did not run because another execution held the lock."""
    now = timezone.now()
    job = _job(job_name)
    execution = JobExecution.objects.create(
        job=job,
        trigger=trigger,
        status=JobExecution.Status.SKIPPED,
        started_at=now,
        finished_at=now,
        duration_ms=0,
        error_message=reason,
    )
    JobDefinition.objects.filter(pk=job.pk).update(last_status=JobDefinition.LastStatus.SKIPPED, updated_at=now)
    return execution


def job_statistics(job_name: str) -> Dict[str, Any]:
    executions = JobExecution.objects.filter(job__name=job_name)
    aggregates = executions.aggregate(
        total=Count("id"),
        completed=Count("id", filter=Q(status=JobExecution.Status.COMPLETED)),
        failed=Count("id", filter=Q(status=JobExecution.Status.FAILED)),
        skipped=Count("id", filter=Q(status=JobExecution.Status.SKIPPED)),
        total_processed=Sum("total_processed"),
        average_duration_ms=Avg("duration_ms", filter=Q(status=JobExecution.Status.COMPLETED)),
    )
    finished = aggregates["completed"] + aggregates["failed"]
    success_rate = round(aggregates["completed"] / finished * 100, 2) if finished else 0.0
    return {
        "job_name": job_name,
        "total_executions": aggregates["total"],
        "completed": aggregates["completed"],
        "failed": aggregates["failed"],
        "skipped": aggregates["skipped"],
        "total_processed": aggregates["total_processed"] or 0,
        "success_rate": success_rate,
        "average_duration_ms": round(aggregates["average_duration_ms"] or 0),
    }


def execution_summary(hours: int = 24) -> Dict[str, Any]:
    """Counts of executions per status over the last ``hours``."""
    since = timezone.now() - timedelta(hours=hours)
    rows = (
        JobExecution.objects.filter(started_at__gte=since)
        .values("job__name", "status")
        .annotate(count=Count("id"), processed=Sum("total_processed"))
        .order_by("job__name", "status")
    )
    jobs: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        entry = jobs.setdefault(row["job__name"], {"executions": 0, "total_processed": 0, "by_status": {}})
        entry["executions"] += row["count"]
        entry["total_processed"] += row["processed"] or 0
        entry["by_status"][row["status"]] = row["count"]
    return {"hours": hours, "since": since.isoformat(), "jobs": jobs}


def recent_executions(job_name: Optional[str] = None, limit: int = 10) -> List[JobExecution]:
    executions = JobExecution.objects.select_related("job")
    if job_name:
        executions = executions.filter(job__name=job_name)
    return list(executions.order_by("-started_at")[:limit])


def prune_executions(keep: Optional[int] = None) -> int:
    """Delete all but the ``keep`` most recent executions of every job."""
    if keep is None:
        keep = getattr(settings, "ROUNDUP_EXECUTION_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT)

    deleted = 0
    for job in JobDefinition.objects.all():
        stale_ids = list(
            JobExecution.objects.filter(job=job).order_by("-started_at", "-id").values_list("id", flat=True)[keep:]
        )
        if stale_ids:
            count, _ = JobExecution.objects.filter(id__in=stale_ids).delete()
            deleted += count
    if deleted:
        logger.info("Pruned %s job execution records.", deleted)
    return deleted
