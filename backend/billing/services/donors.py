"""Resolve the payable identity of a donor."""
from __future__ import annotations

import logging

from billing.models import UserBillingProfile

logger = logging.getLogger(__name__)


class DonorNotFound(Exception):
    """Raised when a user has no billing profile that can be charged."""


def find_donor(user_id) -> UserBillingProfile:
    """Return the billing profile used to charge ``user_id``.

    The profile must carry both a Stripe customer and a saved payment method,
    otherwise the donor cannot be charged off-session.
    """

    profile = (
        UserBillingProfile.objects.select_related("user")
        .filter(user_id=user_id)
        .first()
    )
    if profile is None:
        raise DonorNotFound(f"No billing profile found for user {user_id}.")
    if not profile.is_payable:
        logger.info("Billing profile %s for user %s has no saved payment method.", profile.pk, user_id)
        raise DonorNotFound(f"Billing profile for user {user_id} has no payable Stripe customer.")
    return profile


def find_donor_id(user_id) -> int:
    return find_donor(user_id).pk
