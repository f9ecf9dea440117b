"""Round-up arithmetic and transaction eligibility rules.

Everything here is a pure function of its arguments so the ledger, the
scheduler and the tests can call it freely.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from django.conf import settings

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

DEFAULT_EXCLUDED_TERMS: Tuple[str, ...] = (
    "TRANSFER",
    "ATM",
    "WITHDRAWAL",
    "PAYMENT",
    "REFUND",
    "REVERSAL",
    "DEPOSIT",
    "INTEREST",
    "BANK FEE",
    "SERVICE FEE",
    "ACCOUNT FEE",
    "FEES",
    "LOAN",
    "CREDIT CARD",
    "INCOME",
    "BPAY",
    "DIRECT DEBIT",
)

AmountLike = Union[Decimal, str, int, float]


@dataclass(frozen=True)
class RawTransaction:
    """A bank transaction as reported by the sync source.

    ``amount`` is signed: negative values are outgoing spend.
    """

    id: str
    amount: Decimal
    date: date
    name: str = ""
    category: Sequence[str] = field(default_factory=tuple)
    currency: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, "amount", to_cents(self.amount))
        object.__setattr__(self, "category", tuple(self.category or ()))


def to_cents(amount: AmountLike) -> Decimal:
    return Decimal(str(amount)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def compute_round_up(amount: AmountLike) -> Decimal:
    """Return ``ceil(|amount|) - |amount|`` in cents; whole amounts give 0.00."""
    value = abs(to_cents(amount))
    return (value.to_integral_value(rounding=ROUND_CEILING) - value).quantize(TWO_PLACES)


def excluded_terms() -> Tuple[str, ...]:
    configured = getattr(settings, "ROUNDUP_EXCLUDED_TERMS", None)
    if configured:
        return tuple(term.strip().upper() for term in configured if term and term.strip())
    return DEFAULT_EXCLUDED_TERMS


def _normalise(text: str) -> str:
    return " ".join(str(text).replace("_", " ").upper().split())


def matched_exclusion(
    name: str,
    categories: Iterable[str],
    terms: Optional[Iterable[str]] = None,
) -> Optional[str]:
    """Return the first exclusion term found in the categories or name, if any."""
    haystacks: List[str] = [_normalise(category) for category in categories or () if category]
    if name:
        haystacks.append(_normalise(name))
    for term in terms if terms is not None else excluded_terms():
        for haystack in haystacks:
            if term in haystack:
                return term
    return None


def is_eligible(transaction: RawTransaction, *, terms: Optional[Iterable[str]] = None) -> bool:
    """Decide whether ``transaction`` contributes a round-up.

    Incoming money, whole-unit amounts and anything matching an exclusion
    term (transfers, cash withdrawals, fees, ...) never round up.
    """
    amount = to_cents(transaction.amount)
    if amount >= ZERO:
        return False
    if compute_round_up(amount) == ZERO:
        return False
    return matched_exclusion(transaction.name, transaction.category, terms) is None
