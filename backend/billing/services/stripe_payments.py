"""Stripe payment intent and webhook helpers used by the donation flows."""
from __future__ import annotations

import logging
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

from django.conf import settings
import stripe

from billing.observability.metrics import PAYMENT_INTENT_LATENCY
from .stripe_sdk import StripeConfigurationError, configure_stripe

logger = logging.getLogger(__name__)

__all__ = [
    "StripeConfigurationError",
    "StripeServiceError",
    "StripePaymentDeclined",
    "StripeWebhookSignatureError",
    "create_payment_intent",
    "retrieve_payment_intent",
    "parse_event",
    "to_minor_units",
    "from_minor_units",
]

ZERO_DECIMAL_CURRENCIES: set[str] = {
    "bif",
    "clp",
    "djf",
    "gnf",
    "jpy",
    "kmf",
    "krw",
    "mga",
    "pyg",
    "rwf",
    "ugx",
    "vnd",
    "vuv",
    "xaf",
    "xof",
    "xpf",
}


class StripeServiceError(RuntimeError):
    """Raised when Stripe returns an operational error."""


class StripePaymentDeclined(StripeServiceError):
    """Raised when Stripe declines the charge (card errors, authentication required)."""

    def __init__(self, message: str, *, code: Optional[str] = None, payment_intent_id: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.payment_intent_id = payment_intent_id


class StripeWebhookSignatureError(StripeServiceError):
    """Raised when webhook signature validation fails."""


def _default_currency() -> str:
    return getattr(settings, "STRIPE_CURRENCY", "aud").lower()


def _stringify_metadata(values: Dict[str, Any]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in values.items()}


def _to_plain_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return converter()
    return dict(obj)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a currency amount into Stripe's integer minor units."""

    if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Any, currency: str) -> Decimal:
    if value in (None, "", [], {}):
        return Decimal("0.00")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0.00")
    divisor = Decimal("1") if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES else Decimal("100")
    return (amount / divisor).quantize(Decimal("0.01"))


def create_payment_intent(
    *,
    amount: Decimal,
    customer_id: str,
    payment_method_id: str,
    idempotency_key: str,
    currency: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Create and confirm an off-session payment intent for a saved payment method.

    ``idempotency_key`` is forwarded to Stripe so retrying the same donation
    returns the original intent instead of charging again.
    """

    if amount is None or Decimal(amount) <= 0:
        raise ValueError("amount must be positive.")
    if not customer_id:
        raise ValueError("customer_id is required.")
    if not payment_method_id:
        raise ValueError("payment_method_id is required.")
    if not idempotency_key:
        raise ValueError("idempotency_key is required.")

    configure_stripe()

    resolved_currency = (currency or _default_currency()).lower()
    params: Dict[str, Any] = {
        "amount": to_minor_units(amount, resolved_currency),
        "currency": resolved_currency,
        "customer": customer_id,
        "payment_method": payment_method_id,
        "confirm": True,
        "off_session": True,
        "metadata": _stringify_metadata(metadata or {}),
    }
    if description:
        params["description"] = description

    started = time.monotonic()
    try:
        intent = stripe.PaymentIntent.create(**params, idempotency_key=idempotency_key)
    except stripe.CardError as exc:
        error = getattr(exc, "error", None)
        intent_payload = getattr(error, "payment_intent", None) or {}
        logger.warning("Stripe declined payment for customer %s: %s", customer_id, exc)
        raise StripePaymentDeclined(
            str(exc),
            code=getattr(exc, "code", None),
            payment_intent_id=intent_payload.get("id") if isinstance(intent_payload, dict) else None,
        ) from exc
    except stripe.StripeError as exc:
        logger.warning("Failed to create Stripe payment intent for customer %s: %s", customer_id, exc)
        raise StripeServiceError(str(exc)) from exc
    finally:
        PAYMENT_INTENT_LATENCY.observe(time.monotonic() - started)

    payload = _to_plain_dict(intent)
    return {
        "payment_intent_id": payload.get("id"),
        "status": payload.get("status"),
        "client_secret": payload.get("client_secret"),
    }


def retrieve_payment_intent(payment_intent_id: str) -> Dict[str, Any]:
    """Fetch a Stripe payment intent object as a plain dictionary."""

    if not payment_intent_id:
        raise ValueError("payment_intent_id is required.")

    configure_stripe()

    try:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as exc:  # pragma: no cover - Stripe client passthrough
        logger.warning("Failed to retrieve Stripe payment intent %s: %s", payment_intent_id, exc)
        raise StripeServiceError(str(exc)) from exc

    return _to_plain_dict(intent)


def parse_event(payload: str, sig_header: str, secret: Optional[str] = None) -> stripe.Event:
    """Validate and deserialize a Stripe webhook payload."""

    if not sig_header:
        raise StripeWebhookSignatureError("Stripe-Signature header is missing.")

    webhook_secret = secret or getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not webhook_secret:
        raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured.")

    configure_stripe()

    try:
        return stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=webhook_secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise StripeWebhookSignatureError("Stripe webhook signature verification failed.") from exc
    except ValueError as exc:
        logger.error("Received malformed Stripe webhook payload: %s", exc)
        raise StripeServiceError("Malformed Stripe webhook payload.") from exc
