from datetime import date
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from roundups.models import BankConnection, JobExecution, RoundUpConfig, RoundUpTransaction
from roundups.services import tracker
from roundups.services.scheduler import ExecutionSummary, roundup_processing_job


class RoundUpApiTests(APITestCase):
    def setUp(self):
        User = get_user_model()
        self.user = User.objects.create_user(username="donor", email="donor@example.com", password="pass1234")
        self.admin = User.objects.create_superuser(username="ops", email="ops@example.com", password="pass1234")
        connection = BankConnection.objects.create(user=self.user, plaid_item_id="item-1", access_token="token")
        self.config = RoundUpConfig.objects.create(
            user=self.user,
            organization_ref="org-1",
            bank_connection=connection,
            threshold_amount=Decimal("10.00"),
            current_month_total=Decimal("0.40"),
        )
        RoundUpTransaction.objects.create(
            transaction_id="tx-1",
            config=self.config,
            user=self.user,
            bank_connection=connection,
            original_amount=Decimal("-4.60"),
            round_up_amount=Decimal("0.40"),
            transaction_date=date.today(),
        )

    def test_summary_requires_authentication(self):
        response = self.client.get(reverse("roundups:summary"))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_summary_returns_balances_and_monthly_breakdown(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get(reverse("roundups:summary"), {"months": 2})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = response.json()
        self.assertEqual(payload["transaction_count"], 1)
        self.assertEqual(payload["pending_amount"], "0.40")
        self.assertEqual(payload["configs"][0]["id"], self.config.pk)
        self.assertEqual(len(payload["monthly"]), 1)
        self.assertEqual(payload["monthly"][0]["amount"], "0.40")

    def test_summary_rejects_invalid_month_range(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get(reverse("roundups:summary"), {"months": 0})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_job_list_is_admin_only(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.get(reverse("roundups:job-list"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_job_list_includes_statistics(self):
        tracker.register_job(roundup_processing_job.job_name, roundup_processing_job.schedule)
        tracker.complete_execution(
            tracker.start_execution(roundup_processing_job.job_name),
            ExecutionSummary(total_processed=4, success_count=4),
        )
        self.client.force_authenticate(user=self.admin)

        response = self.client.get(reverse("roundups:job-list"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        jobs = {job["name"]: job for job in response.json()["jobs"]}
        job = jobs[roundup_processing_job.job_name]
        self.assertEqual(job["schedule"], "0 */4 * * *")
        self.assertEqual(job["statistics"]["total_processed"], 4)
        self.assertEqual(job["recent_executions"][0]["status"], JobExecution.Status.COMPLETED)

    def test_manual_trigger_runs_the_job(self):
        self.client.force_authenticate(user=self.admin)
        result = {"success": True, "total_processed": 1, "success_count": 1, "failure_count": 0, "message": "ok"}

        with patch.object(roundup_processing_job, "manual_trigger", return_value=result) as trigger:
            response = self.client.post(reverse("roundups:job-trigger", args=[roundup_processing_job.job_name]))

        trigger.assert_called_once_with()
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), result)

    def test_manual_trigger_reports_a_held_lock(self):
        self.client.force_authenticate(user=self.admin)
        lock = roundup_processing_job.lock()
        self.assertTrue(lock.acquire())
        try:
            response = self.client.post(reverse("roundups:job-trigger", args=[roundup_processing_job.job_name]))
        finally:
            lock.release()

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertFalse(response.json()["success"])

    def test_manual_trigger_unknown_job(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(reverse("roundups:job-trigger", args=["does-not-exist"]))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
