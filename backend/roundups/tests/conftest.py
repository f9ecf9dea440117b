from datetime import date
from decimal import Decimal
from itertools import count
from unittest.mock import patch

import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache

from billing.models import UserBillingProfile
from roundups.models import BankConnection, RoundUpConfig, RoundUpTransaction

_ids = count(1)


@pytest.fixture(autouse=True)
def clear_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        username="donor",
        email="donor@example.com",
        password="pass1234",
    )


@pytest.fixture
def donor_profile(user):
    return UserBillingProfile.objects.create(
        user=user,
        stripe_customer_id="cus_test",
        default_payment_method_id="pm_test",
    )


@pytest.fixture
def bank_connection(user):
    return BankConnection.objects.create(
        user=user,
        institution_name="Test Bank",
        plaid_item_id="item-1",
        access_token="access-sandbox-1",
    )


@pytest.fixture
def make_config(user, bank_connection):
    def _make(**overrides):
        values = {
            "user": user,
            "organization_ref": "org-1",
            "bank_connection": bank_connection,
            "threshold_amount": Decimal("5.00"),
        }
        values.update(overrides)
        return RoundUpConfig.objects.create(**values)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def add_round_ups():
    """Store outstanding round-up rows for ``config`` and add them to its total."""

    def _add(config, *amounts, tx_date=None):
        rows = []
        for amount in amounts:
            amount = Decimal(str(amount))
            rows.append(
                RoundUpTransaction.objects.create(
                    transaction_id=f"tx-{next(_ids)}",
                    config=config,
                    user_id=config.user_id,
                    bank_connection_id=config.bank_connection_id,
                    original_amount=-(Decimal("3.00") + (1 - amount)),
                    round_up_amount=amount,
                    transaction_date=tx_date or date(2025, 3, 10),
                    name="Coffee Shop",
                    categories=["Food and Drink"],
                )
            )
            config.current_month_total += amount
        RoundUpConfig.objects.filter(pk=config.pk).update(current_month_total=config.current_month_total)
        return rows

    return _add


@pytest.fixture
def payment_intent():
    with patch("billing.services.stripe_payments.create_payment_intent") as mocked:
        mocked.return_value = {
            "payment_intent_id": "pi_test_1",
            "status": "processing",
            "client_secret": "secret",
        }
        yield mocked
