"""Read-only reporting over the round-up ledger."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from dateutil.relativedelta import relativedelta
from django.db.models import Count, DecimalField, Q, Sum, Value
from django.db.models.functions import Coalesce, TruncMonth
from django.utils import timezone

from roundups.models import Donation, RoundUpConfig, RoundUpTransaction

ZERO = Decimal("0.00")
MONEY = DecimalField(max_digits=12, decimal_places=2)


def _money(field: str, **filters) -> Coalesce:
    condition = Q(**filters) if filters else None
    return Coalesce(Sum(field, filter=condition), Value(ZERO), output_field=MONEY)


def user_summary(user) -> Dict[str, Any]:
    """Round-up totals for ``user`` grouped by ledger status plus per-config balances."""

    transactions = RoundUpTransaction.objects.filter(user=user)
    totals = transactions.aggregate(
        transaction_count=Count("id"),
        total_round_ups=_money("round_up_amount"),
        pending_amount=_money("round_up_amount", status=RoundUpTransaction.Status.PROCESSED),
        donated_amount=_money("round_up_amount", status=RoundUpTransaction.Status.DONATED),
    )
    by_status = {
        row["status"]: {"count": row["count"], "amount": str(row["amount"])}
        for row in transactions.values("status")
        .annotate(count=Count("id"), amount=_money("round_up_amount"))
        .order_by("status")
    }

    configs: List[Dict[str, Any]] = []
    for config in RoundUpConfig.objects.filter(user=user, is_active=True).order_by("pk"):
        configs.append(
            {
                "id": config.pk,
                "organization_ref": config.organization_ref,
                "cause_ref": config.cause_ref,
                "threshold": str(config.threshold),
                "current_month_total": str(config.current_month_total),
                "total_donated": str(config.total_donated),
                "status": config.status,
                "enabled": config.enabled,
                "last_donation_attempt": config.last_donation_attempt.isoformat() if config.last_donation_attempt else None,
            }
        )

    lifetime = Donation.objects.filter(user=user, status=Donation.Status.COMPLETED).aggregate(
        donated=_money("amount"),
        charged=_money("total_amount"),
        count=Count("id"),
    )

    return {
        "transaction_count": totals["transaction_count"],
        "total_round_ups": str(totals["total_round_ups"]),
        "pending_amount": str(totals["pending_amount"]),
        "donated_amount": str(totals["donated_amount"]),
        "by_status": by_status,
        "configs": configs,
        "lifetime_donated": str(lifetime["donated"]),
        "lifetime_charged": str(lifetime["charged"]),
        "completed_donations": lifetime["count"],
    }


def monthly_breakdown(user, months: int = 12) -> List[Dict[str, Any]]:
    """Round-up count and amount per calendar month, oldest first."""

    start: date = timezone.localdate().replace(day=1) - relativedelta(months=max(months, 1) - 1)
    rows = (
        RoundUpTransaction.objects.filter(user=user, transaction_date__gte=start)
        .annotate(month=TruncMonth("transaction_date"))
        .values("month")
        .annotate(
            count=Count("id"),
            amount=_money("round_up_amount"),
            donated=_money("round_up_amount", status=RoundUpTransaction.Status.DONATED),
        )
        .order_by("month")
    )
    return [
        {
            "month": row["month"].strftime("%Y-%m"),
            "count": row["count"],
            "amount": str(row["amount"]),
            "donated": str(row["donated"]),
        }
        for row in rows
    ]
