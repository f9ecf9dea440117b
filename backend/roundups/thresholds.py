"""Donation threshold variants.

A round-up config either donates whenever its balance reaches a fixed amount
or only at the month-end sweep. ``Threshold`` is the union of the two.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

MIN_THRESHOLD = Decimal("3.00")
MAX_THRESHOLD = Decimal("1000.00")
NO_LIMIT = "no-limit"


@dataclass(frozen=True)
class Unlimited:
    """Never triggers mid-cycle; the balance is donated at month end."""

    def is_met(self, total: Decimal) -> bool:
        return False

    def as_value(self) -> str:
        return NO_LIMIT

    def __str__(self) -> str:
        return NO_LIMIT


@dataclass(frozen=True)
class Amount:
    """Triggers once the balance reaches ``value`` (inclusive)."""

    value: Decimal

    def __post_init__(self):
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, "value", Decimal(str(self.value)))
        if self.value <= 0:
            raise ValueError("Threshold amount must be positive.")

    def is_met(self, total: Decimal) -> bool:
        return total >= self.value

    def as_value(self) -> str:
        return str(self.value)

    def __str__(self) -> str:
        return str(self.value)


Threshold = Union[Unlimited, Amount]


def from_amount(value: Optional[Decimal]) -> Threshold:
    """Build a threshold from the nullable column value (``None`` means no limit)."""
    if value is None:
        return Unlimited()
    return Amount(value)


def parse_threshold(raw: Union[str, int, float, Decimal, None]) -> Threshold:
    """Parse user input such as ``"no-limit"`` or ``"25"``.

    Raises ``ValueError`` when the amount falls outside the allowed range.
    """
    if raw is None or (isinstance(raw, str) and raw.strip().lower() == NO_LIMIT):
        return Unlimited()
    try:
        value = Decimal(str(raw).strip())
    except ArithmeticError as exc:
        raise ValueError(f"Invalid threshold value: {raw!r}") from exc
    if value < MIN_THRESHOLD or value > MAX_THRESHOLD:
        raise ValueError(f"Threshold must be between {MIN_THRESHOLD} and {MAX_THRESHOLD}.")
    return Amount(value.quantize(Decimal("0.01")))


def to_amount(threshold: Threshold) -> Optional[Decimal]:
    """Inverse of :func:`from_amount`."""
    if isinstance(threshold, Amount):
        return threshold.value
    return None
