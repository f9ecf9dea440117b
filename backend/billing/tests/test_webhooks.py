import json
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

import pytest
from django.core.management import call_command
from django.test import override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from billing.models import BillingAuditLog, BillingEventDeadLetter, WebhookEventLog
from billing.tasks import HandlerResult, cleanup_webhook_event_logs, process_stripe_event_async
from billing.tasks_webhooks import dispatch_event
from billing.tests.conftest import intent_event
from roundups.models import Donation

WEBHOOK_URL = "/api/billing/webhook/stripe/"


@pytest.mark.django_db
def test_succeeded_event_completes_donation(donation):
    result = process_stripe_event_async.run(intent_event("payment_intent.succeeded"))

    assert result["status"] == HandlerResult.PROCESSED
    donation.refresh_from_db()
    assert donation.status == Donation.Status.COMPLETED

    log = WebhookEventLog.objects.get(event_id="evt_1")
    assert log.handled is True
    assert log.status == WebhookEventLog.Status.PROCESSED
    assert log.idempotency_key == "payment_intent:pi_alice:succeeded"
    assert log.attempts == 1
    assert BillingAuditLog.objects.filter(event_type="donation.completed", stripe_id="pi_alice").exists()


@pytest.mark.django_db
def test_duplicate_delivery_is_skipped(donation):
    process_stripe_event_async.run(intent_event("payment_intent.succeeded"))

    result = process_stripe_event_async.run(intent_event("payment_intent.succeeded"))

    assert result == {"status": "skipped"}
    assert BillingAuditLog.objects.filter(event_type="donation.completed").count() == 1


@pytest.mark.django_db
def test_failed_event_records_decline_reason(donation):
    event = intent_event(
        "payment_intent.payment_failed",
        last_payment_error={"message": "Your card has insufficient funds.", "decline_code": "insufficient_funds"},
    )

    result = process_stripe_event_async.run(event)

    assert result["status"] == HandlerResult.PROCESSED
    donation.refresh_from_db()
    assert donation.status == Donation.Status.FAILED
    assert donation.failure_reason == "Your card has insufficient funds."


@pytest.mark.django_db
def test_canceled_event_fails_donation(donation):
    process_stripe_event_async.run(intent_event("payment_intent.canceled", cancellation_reason="abandoned"))

    donation.refresh_from_db()
    assert donation.status == Donation.Status.FAILED
    assert donation.failure_reason == "Payment intent canceled (abandoned)"


@pytest.mark.django_db
def test_unknown_donation_intent_is_dead_lettered(db):
    event = intent_event("payment_intent.succeeded", "pi_unknown", metadata={"donation_type": "roundup"})

    result = process_stripe_event_async.run(event)

    assert result["status"] == HandlerResult.DEAD_LETTER
    dead_letter = BillingEventDeadLetter.objects.get(event_id="evt_1")
    assert dead_letter.failure_reason.startswith("donation_not_found")
    assert dead_letter.payment_intent_id == "pi_unknown"
    assert dead_letter.payload["data"]["object"]["id"] == "pi_unknown"
    assert WebhookEventLog.objects.get(event_id="evt_1").handled is False


@pytest.mark.django_db
def test_unrelated_intent_is_ignored(db):
    result = process_stripe_event_async.run(intent_event("payment_intent.succeeded", "pi_other"))

    assert result["status"] == HandlerResult.IGNORED
    assert not BillingEventDeadLetter.objects.exists()


@pytest.mark.django_db
def test_unsupported_event_type_is_ignored(db):
    result = process_stripe_event_async.run({"id": "evt_2", "type": "customer.created", "data": {"object": {}}})

    assert result["status"] == HandlerResult.IGNORED
    assert WebhookEventLog.objects.get(event_id="evt_2").status == WebhookEventLog.Status.IGNORED


@pytest.mark.django_db
def test_malformed_intent_payload_is_dead_lettered(db):
    result = process_stripe_event_async.run({"id": "evt_3", "type": "payment_intent.succeeded", "data": {}})

    assert result["status"] == HandlerResult.DEAD_LETTER
    assert BillingEventDeadLetter.objects.get(event_id="evt_3").failure_reason.startswith("invalid_payload")


@pytest.mark.django_db
def test_dispatch_uses_donation_id_metadata_when_intent_is_unrecorded(donation):
    Donation.objects.filter(pk=donation.pk).update(stripe_payment_intent_id=None, status=Donation.Status.PENDING)
    event = intent_event("payment_intent.succeeded", "pi_late", metadata={"donation_id": str(donation.pk)})

    result = dispatch_event(event_id="evt_1", event_type=event["type"], payload=event, received_at=timezone.now())

    assert result.status == HandlerResult.PROCESSED
    donation.refresh_from_db()
    assert donation.status == Donation.Status.COMPLETED
    assert donation.stripe_payment_intent_id == "pi_late"


@pytest.mark.django_db
def test_replay_command_processes_repaired_dead_letters(donation):
    event = intent_event("payment_intent.succeeded", "pi_missing", metadata={"donation_type": "scheduled"})
    process_stripe_event_async.run(event)
    assert BillingEventDeadLetter.objects.filter(event_id="evt_1").exists()

    # Support attaches the intent to the donation it belongs to.
    Donation.objects.filter(pk=donation.pk).update(stripe_payment_intent_id="pi_missing")
    out = StringIO()
    call_command("replay_billing_deadletter", "--payment-intent", "pi_missing", stdout=out)

    assert "1 succeeded" in out.getvalue()
    assert not BillingEventDeadLetter.objects.exists()
    donation.refresh_from_db()
    assert donation.status == Donation.Status.COMPLETED


@pytest.mark.django_db
def test_replay_command_dry_run_keeps_dead_letters(db):
    BillingEventDeadLetter.objects.create(
        event_id="evt_9",
        event_type="payment_intent.succeeded",
        payload={"id": "evt_9"},
        failure_reason="donation_not_found",
    )
    out = StringIO()

    call_command("replay_billing_deadletter", "--dry-run", stdout=out)

    assert "Would replay evt_9" in out.getvalue()
    assert BillingEventDeadLetter.objects.count() == 1


@pytest.mark.django_db
@override_settings(STRIPE_SECRET_KEY="sk_test", STRIPE_WEBHOOK_SECRET="whsec_test")
def test_webhook_view_queues_verified_events():
    event = intent_event("payment_intent.succeeded", event_id="evt_view")
    client = APIClient()

    with patch("billing.views_webhook.parse_event", return_value=event) as parse, patch(
        "billing.views_webhook.process_stripe_event_async"
    ) as task:
        response = client.post(
            WEBHOOK_URL,
            data=json.dumps(event),
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE="t=1,v1=sig",
        )

    assert response.status_code == 202
    assert parse.call_args.kwargs["sig_header"] == "t=1,v1=sig"
    task.delay.assert_called_once_with(event)
    assert WebhookEventLog.objects.get(event_id="evt_view").status == WebhookEventLog.Status.RECEIVED


@pytest.mark.django_db
@override_settings(STRIPE_SECRET_KEY="sk_test", STRIPE_WEBHOOK_SECRET="whsec_test")
def test_webhook_view_rejects_bad_signatures():
    response = APIClient().post(
        WEBHOOK_URL,
        data="{}",
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE="t=1,v1=bad",
    )

    assert response.status_code == 400


@pytest.mark.django_db
def test_webhook_view_acknowledges_handled_events(donation):
    process_stripe_event_async.run(intent_event("payment_intent.succeeded"))

    with patch("billing.views_webhook.parse_event", return_value=intent_event("payment_intent.succeeded")), patch(
        "billing.views_webhook.process_stripe_event_async"
    ) as task:
        response = APIClient().post(WEBHOOK_URL, data="{}", content_type="application/json", HTTP_STRIPE_SIGNATURE="sig")

    assert response.status_code == 200
    task.delay.assert_not_called()


@pytest.mark.django_db
def test_cleanup_removes_only_old_handled_events():
    old = timezone.now() - timedelta(days=10)
    WebhookEventLog.objects.create(
        event_id="evt_old", event_type="payment_intent.succeeded",
        status=WebhookEventLog.Status.PROCESSED, handled=True, processed_at=old,
    )
    WebhookEventLog.objects.create(
        event_id="evt_recent", event_type="payment_intent.succeeded",
        status=WebhookEventLog.Status.PROCESSED, handled=True, processed_at=timezone.now(),
    )
    WebhookEventLog.objects.create(
        event_id="evt_failed", event_type="payment_intent.succeeded",
        status=WebhookEventLog.Status.FAILED, handled=False,
    )

    assert cleanup_webhook_event_logs(days=7) == 1
    assert set(WebhookEventLog.objects.values_list("event_id", flat=True)) == {"evt_recent", "evt_failed"}
