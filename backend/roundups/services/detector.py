"""Threshold and month-end detection for round-up configs.

A config moves ``pending``/``failed`` -> ``processing`` only through
:func:`claim`, a conditional update that succeeds for exactly one caller.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

from django.utils import timezone

from billing.services.donors import DonorNotFound
from roundups.exceptions import RoundUpError
from roundups.models import Donation, RoundUpConfig, RoundUpTransaction
from roundups.services import orchestrator
from roundups.thresholds import Amount

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    attempted: List[int] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return {"attempted": list(self.attempted), "succeeded": self.succeeded, "failed": self.failed}


def is_month_end_sweep_day(today: date) -> bool:
    return today.day == 1


def should_trigger_threshold(config: RoundUpConfig) -> bool:
    """True when a claimable config has reached its numeric threshold."""
    if not config.is_claimable:
        return False
    threshold = config.threshold
    if not isinstance(threshold, Amount):
        return False
    total = config.current_month_total
    return total > 0 and threshold.is_met(total)


def should_sweep_month_end(config: RoundUpConfig, today: date) -> bool:
    return is_month_end_sweep_day(today) and config.is_claimable and config.current_month_total > 0


def evaluate(config: RoundUpConfig, *, today: Optional[date] = None) -> Optional[str]:
    """Return the trigger that should fire for ``config``, or ``None``."""
    today = today or timezone.localdate()
    if should_sweep_month_end(config, today):
        return Donation.Trigger.MONTH_END
    if should_trigger_threshold(config):
        return Donation.Trigger.THRESHOLD
    return None


def claim(config: RoundUpConfig, *, now: Optional[datetime] = None) -> bool:
    """Atomically move ``config`` into ``processing``.

    Returns ``False`` when another path already holds the claim or the config
    is no longer claimable. On success the instance is refreshed so callers see
    the persisted claim timestamp and balance.
    """
    now = now or timezone.now()
    updated = RoundUpConfig.objects.filter(
        pk=config.pk,
        status__in=RoundUpConfig.CLAIMABLE_STATUSES,
    ).update(
        status=RoundUpConfig.Status.PROCESSING,
        processing_started_at=now,
        updated_at=now,
    )
    if not updated:
        logger.info("Round-up config %s could not be claimed; status changed concurrently.", config.pk)
        return False

    config.refresh_from_db(fields=["status", "processing_started_at", "current_month_total", "updated_at"])
    return True


def claim_and_trigger(config: RoundUpConfig, trigger: str, *, today: Optional[date] = None) -> Optional[Donation]:
    """Claim ``config`` and hand its outstanding batch to the orchestrator.

    Returns ``None`` when the claim was lost. Orchestrator errors propagate
    after the config has been marked failed.
    """
    if not claim(config):
        return None
    batch = RoundUpTransaction.objects.outstanding_for(config).order_by("transaction_date", "id")
    return orchestrator.trigger_donation(config, batch, trigger=trigger, today=today)


def sweep_month_end(today: Optional[date] = None) -> SweepResult:
    """Donate every positive balance left over from the month that just ended.

    Runs only on the first day of the month. Configs without a numeric
    threshold are settled here and nowhere else.
    """
    today = today or timezone.localdate()
    result = SweepResult()
    if not is_month_end_sweep_day(today):
        return result

    period = orchestrator.period_for(Donation.Trigger.MONTH_END, today).strftime("%Y-%m")
    already_swept = Donation.objects.filter(
        trigger=Donation.Trigger.MONTH_END,
        metadata__month=period,
        roundup_config__isnull=False,
    ).exclude(status=Donation.Status.FAILED).values("roundup_config_id")

    configs = RoundUpConfig.objects.due_for_month_end().exclude(pk__in=already_swept).order_by("pk")
    for config in configs:
        result.attempted.append(config.pk)
        try:
            donation = claim_and_trigger(config, Donation.Trigger.MONTH_END, today=today)
        except (RoundUpError, DonorNotFound) as exc:
            result.failed += 1
            logger.warning("Month-end sweep failed for round-up config %s: %s", config.pk, exc)
            continue
        except Exception:
            result.failed += 1
            logger.exception("Unexpected error sweeping round-up config %s", config.pk)
            continue
        if donation is not None:
            result.succeeded += 1

    logger.info(
        "Month-end sweep on %s: attempted=%s succeeded=%s failed=%s",
        today.isoformat(),
        len(result.attempted),
        result.succeeded,
        result.failed,
    )
    return result
