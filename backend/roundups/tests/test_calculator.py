from datetime import date
from decimal import ROUND_CEILING, Decimal

import pytest
from django.test import override_settings

from roundups import thresholds
from roundups.services.calculator import (
    RawTransaction,
    compute_round_up,
    is_eligible,
    matched_exclusion,
)


def _tx(amount, name="Corner Cafe", category=("Food and Drink",)):
    return RawTransaction(id="tx", amount=Decimal(amount), date=date(2025, 3, 10), name=name, category=category)


@pytest.mark.parametrize(
    "amount,expected",
    [
        ("-4.60", "0.40"),
        ("-4.01", "0.99"),
        ("-0.30", "0.70"),
        ("-12.00", "0.00"),
        ("7.25", "0.75"),
    ],
)
def test_compute_round_up(amount, expected):
    assert compute_round_up(Decimal(amount)) == Decimal(expected)


def test_round_up_completes_to_next_whole_unit():
    for raw in ("-0.01", "-3.33", "-19.99", "-250.50"):
        amount = abs(Decimal(raw))
        assert compute_round_up(raw) + amount == amount.to_integral_value(rounding=ROUND_CEILING)


def test_food_purchase_is_eligible():
    assert is_eligible(_tx("-4.60"))


def test_incoming_money_is_never_eligible():
    assert not is_eligible(_tx("4.60"))
    assert not is_eligible(_tx("0.00"))


def test_whole_amount_is_not_eligible():
    assert not is_eligible(_tx("-20.00"))


def test_transfer_category_is_excluded():
    assert not is_eligible(_tx("-100.00", category=("Transfer",)))
    assert not is_eligible(_tx("-99.50", category=("Transfer", "Debit")))


def test_exclusion_matches_name_and_underscored_categories():
    assert matched_exclusion("ATM Withdrawal King St", ()) == "ATM"
    assert matched_exclusion("Grocer", ("BANK_FEES",)) == "BANK FEE"
    assert matched_exclusion("Grocer", ("Shops",)) is None


@override_settings(ROUNDUP_EXCLUDED_TERMS=["coffee"])
def test_excluded_terms_come_from_settings():
    assert not is_eligible(_tx("-4.60", name="Coffee Shop", category=()))
    assert is_eligible(_tx("-4.60", name="Transfer Bakery", category=()))


def test_raw_transaction_coerces_amount_to_cents():
    tx = RawTransaction(id="tx", amount="-4.605", date=date(2025, 3, 10), category=None)
    assert tx.amount == Decimal("-4.61")
    assert tx.category == ()


def test_threshold_parsing():
    assert thresholds.parse_threshold("no-limit") == thresholds.Unlimited()
    assert thresholds.parse_threshold(None) == thresholds.Unlimited()
    assert thresholds.parse_threshold("25") == thresholds.Amount(Decimal("25.00"))

    with pytest.raises(ValueError):
        thresholds.parse_threshold("2.99")
    with pytest.raises(ValueError):
        thresholds.parse_threshold("1000.01")


def test_threshold_is_met_inclusively():
    threshold = thresholds.Amount(Decimal("5.00"))
    assert threshold.is_met(Decimal("5.00"))
    assert not threshold.is_met(Decimal("4.99"))
    assert not thresholds.Unlimited().is_met(Decimal("999.00"))
    assert thresholds.to_amount(thresholds.from_amount(None)) is None
