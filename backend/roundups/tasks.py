"""Celery entry points for the recurring round-up jobs."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task

from roundups.services import settlement, tracker
from roundups.services.scheduler import roundup_processing_job, scheduled_donation_job

logger = logging.getLogger(__name__)


@shared_task(queue="roundups")
def process_roundup_transactions() -> Dict[str, Any]:
    """Run one tick of the round-up pipeline; overlapping ticks are skipped."""

    return roundup_processing_job.run().as_dict()


@shared_task(queue="roundups")
def process_scheduled_donations() -> Dict[str, Any]:
    return scheduled_donation_job.run().as_dict()


@shared_task(queue="roundups")
def reconcile_in_flight_donations() -> Dict[str, Any]:
    """Poll Stripe for donations whose webhook never arrived."""

    result = settlement.reconcile_in_flight()
    if result.checked:
        logger.info("Reconciled %s in-flight donation(s): %s", result.checked, result.as_dict())
    return result.as_dict()


@shared_task(queue="maintenance")
def prune_job_executions(keep: Optional[int] = None) -> int:
    return tracker.prune_executions(keep)
