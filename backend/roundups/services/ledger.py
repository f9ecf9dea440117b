"""Accumulation ledger: turns synced bank transactions into round-up rows."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from billing.models import _default_currency
from billing.observability.metrics import ROUNDUP_TRANSACTIONS_APPLIED
from roundups.models import RoundUpConfig, RoundUpTransaction
from roundups.services.calculator import RawTransaction, compute_round_up, is_eligible

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    processed: int
    skipped: int
    failed: int
    new_total: Decimal
    added_amount: Decimal = Decimal("0.00")
    duplicates: int = 0

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "new_total": str(self.new_total),
            "added_amount": str(self.added_amount),
        }


def apply_transactions(config: RoundUpConfig, raw_transactions: Iterable[RawTransaction]) -> LedgerResult:
    """Persist eligible transactions and add their round-ups to the running total.

    Each row is written in its own atomic block together with the balance
    increment, so a transaction id already present is reported as skipped and
    any other database failure only loses that row.
    """

    processed = skipped = failed = duplicates = 0
    added = Decimal("0.00")

    for raw in raw_transactions:
        if not is_eligible(raw):
            skipped += 1
            continue

        round_up = compute_round_up(raw.amount)
        try:
            with transaction.atomic():
                RoundUpTransaction.objects.create(
                    transaction_id=raw.id,
                    config=config,
                    user_id=config.user_id,
                    bank_connection_id=config.bank_connection_id,
                    original_amount=raw.amount,
                    round_up_amount=round_up,
                    currency=(raw.currency or _default_currency()).lower(),
                    transaction_date=raw.date,
                    name=(raw.name or "")[:255],
                    categories=list(raw.category),
                    status=RoundUpTransaction.Status.PROCESSED,
                )
                RoundUpConfig.objects.filter(pk=config.pk).update(
                    current_month_total=F("current_month_total") + round_up,
                    updated_at=timezone.now(),
                )
        except IntegrityError:
            if RoundUpTransaction.objects.filter(transaction_id=raw.id).exists():
                skipped += 1
                duplicates += 1
                logger.debug("Transaction %s already applied; skipping.", raw.id)
            else:
                failed += 1
                logger.exception("Integrity error storing round-up for transaction %s", raw.id)
            continue
        except DatabaseError:
            failed += 1
            logger.exception("Failed to store round-up for transaction %s", raw.id)
            continue

        processed += 1
        added += round_up

    config.refresh_from_db(fields=["current_month_total", "updated_at"])

    if processed:
        ROUNDUP_TRANSACTIONS_APPLIED.labels(result="processed").inc(processed)
    if skipped:
        ROUNDUP_TRANSACTIONS_APPLIED.labels(result="skipped").inc(skipped)
    if failed:
        ROUNDUP_TRANSACTIONS_APPLIED.labels(result="failed").inc(failed)

    result = LedgerResult(
        processed=processed,
        skipped=skipped,
        failed=failed,
        new_total=config.current_month_total,
        added_amount=added,
        duplicates=duplicates,
    )
    logger.info(
        "Applied transactions for round-up config %s: processed=%s skipped=%s failed=%s total=%s",
        config.pk,
        processed,
        skipped,
        failed,
        result.new_total,
    )
    return result
