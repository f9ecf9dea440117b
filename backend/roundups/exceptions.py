"""Exceptions raised by the round-up donation pipeline."""
from __future__ import annotations

from billing.services.donors import DonorNotFound


class RoundUpError(Exception):
    """Base exception for round-up processing."""


class EmptyTransactionBatch(RoundUpError):
    """Raised when a trigger finds no outstanding round-ups to settle."""


class PaymentIntentFailed(RoundUpError):
    """Raised when the payment intent for a donation could not be created or recorded."""


class BankSyncError(RoundUpError):
    """Raised when the bank transaction source cannot be reached or rejects the request."""


class ConfigNotClaimable(RoundUpError):
    """Raised when a config is handed to the orchestrator without holding the processing claim."""


__all__ = [
    "RoundUpError",
    "DonorNotFound",
    "EmptyTransactionBatch",
    "PaymentIntentFailed",
    "BankSyncError",
    "ConfigNotClaimable",
]
