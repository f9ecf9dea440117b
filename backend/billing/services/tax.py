"""Tax calculation for donation charges."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from django.conf import settings

TWO_PLACES = Decimal("0.01")
DEFAULT_TAX_RATE = Decimal("0.10")


@dataclass(frozen=True)
class TaxBreakdown:
    amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def _tax_rate() -> Decimal:
    rate = getattr(settings, "ROUNDUP_TAX_RATE", DEFAULT_TAX_RATE)
    return Decimal(str(rate))


def calculate_tax(
    amount: Union[Decimal, str, int],
    is_taxable: bool,
    *,
    rate: Optional[Decimal] = None,
) -> TaxBreakdown:
    """Return the tax owed on ``amount`` and the total that will be charged.

    Non-taxable donations carry a zero tax amount. Amounts are rounded half-up
    to cents.
    """

    base = Decimal(str(amount)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    if base < 0:
        raise ValueError("Donation amount cannot be negative.")

    if not is_taxable:
        return TaxBreakdown(amount=base, tax_amount=Decimal("0.00"), total_amount=base)

    effective_rate = _tax_rate() if rate is None else Decimal(str(rate))
    tax_amount = (base * effective_rate).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return TaxBreakdown(amount=base, tax_amount=tax_amount, total_amount=base + tax_amount)
