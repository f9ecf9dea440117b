from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest
from django.utils import timezone

from roundups.models import RoundUpTransaction
from roundups.services import projections


@pytest.mark.django_db
def test_user_summary_groups_round_ups_by_status(user, config, add_round_ups):
    rows = add_round_ups(config, "0.40", "0.60", "0.25")
    RoundUpTransaction.objects.filter(pk=rows[0].pk).update(status=RoundUpTransaction.Status.DONATED)

    summary = projections.user_summary(user)

    assert summary["transaction_count"] == 3
    assert summary["total_round_ups"] == "1.25"
    assert summary["pending_amount"] == "0.85"
    assert summary["donated_amount"] == "0.40"
    assert summary["by_status"]["processed"] == {"count": 2, "amount": "0.85"}
    assert summary["configs"][0]["current_month_total"] == "1.25"
    assert summary["configs"][0]["threshold"] == "5.00"
    assert summary["lifetime_donated"] == "0.00"


@pytest.mark.django_db
def test_monthly_breakdown(user, config, add_round_ups):
    add_round_ups(config, "0.40", tx_date=date(2025, 1, 20))
    add_round_ups(config, "0.60", "0.25", tx_date=date(2025, 3, 2))
    add_round_ups(config, "0.50", tx_date=date(2024, 6, 2))

    with patch.object(timezone, "localdate", return_value=date(2025, 3, 15)):
        breakdown = projections.monthly_breakdown(user, months=3)

    assert breakdown == [
        {"month": "2025-01", "count": 1, "amount": "0.40", "donated": "0.00"},
        {"month": "2025-03", "count": 2, "amount": "0.85", "donated": "0.00"},
    ]
