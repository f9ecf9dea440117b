"""
Process-wide configuration for the Stripe Python SDK.

Stripe keeps its credentials and network behaviour in module globals. Every
service that talks to Stripe calls :func:`configure_stripe` first so API key,
API version and retry policy always reflect the current Django settings
(tests override them with ``override_settings``).
"""

from __future__ import annotations

import logging

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


def configure_stripe() -> None:
    """Apply Stripe credentials and network retry policy from settings."""

    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version

    retries = int(getattr(settings, "STRIPE_MAX_NETWORK_RETRIES", 2))
    if stripe.max_network_retries != retries:
        logger.debug("Setting Stripe max_network_retries=%s", retries)
        stripe.max_network_retries = retries
