from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model

from billing.models import UserBillingProfile
from roundups.models import Donation


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        username="alice",
        email="alice@example.com",
        password="pass1234",
    )


@pytest.fixture
def donor_profile(user):
    return UserBillingProfile.objects.create(
        user=user,
        stripe_customer_id="cus_alice",
        default_payment_method_id="pm_alice",
    )


@pytest.fixture
def donation(user, donor_profile):
    return Donation.objects.create(
        donor=donor_profile,
        user=user,
        organization_ref="org-1",
        donation_type=Donation.DonationType.SCHEDULED,
        trigger=Donation.Trigger.SCHEDULED,
        amount=Decimal("20.00"),
        total_amount=Decimal("20.00"),
        status=Donation.Status.PROCESSING,
        stripe_payment_intent_id="pi_alice",
        idempotency_key="scheduled:1:2025-03-01",
    )


def intent_event(event_type, intent_id="pi_alice", *, event_id="evt_1", **intent_fields):
    intent = {"id": intent_id, "object": "payment_intent", "metadata": {}}
    intent.update(intent_fields)
    return {
        "id": event_id,
        "type": event_type,
        "created": 1741000000,
        "data": {"object": intent},
    }
