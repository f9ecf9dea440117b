import uuid
from decimal import Decimal

import billing.models
import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("billing", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="BankConnection",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("institution_name", models.CharField(blank=True, help_text="Display name of the linked institution.", max_length=255)),
                ("plaid_item_id", models.CharField(help_text="Plaid item identifier.", max_length=255, unique=True)),
                ("access_token", models.CharField(help_text="Plaid access token used for transaction sync.", max_length=255)),
                ("sync_cursor", models.TextField(blank=True, help_text="Plaid /transactions/sync cursor of the last fully applied page.")),
                ("is_active", models.BooleanField(default=True)),
                ("last_synced_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(help_text="Owner of the linked bank item.", on_delete=django.db.models.deletion.CASCADE, related_name="bank_connections", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "roundup_bank_connection",
                "ordering": ["-created_at"],
                "verbose_name": "Bank connection",
                "verbose_name_plural": "Bank connections",
            },
        ),
        migrations.CreateModel(
            name="RoundUpConfig",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("organization_ref", models.CharField(help_text="Identifier of the organization receiving donations.", max_length=64)),
                ("cause_ref", models.CharField(blank=True, help_text="Identifier of the cause within the organization.", max_length=64)),
                ("threshold_amount", models.DecimalField(blank=True, decimal_places=2, help_text="Balance that triggers a donation; empty means donate at month end only.", max_digits=8, null=True, validators=[django.core.validators.MinValueValidator(Decimal("3.00")), django.core.validators.MaxValueValidator(Decimal("1000.00"))])),
                ("current_month_total", models.DecimalField(decimal_places=2, default=Decimal("0.00"), help_text="Round-ups accumulated in the current cycle and not yet donated.", max_digits=10)),
                ("total_donated", models.DecimalField(decimal_places=2, default=Decimal("0.00"), help_text="Lifetime round-up amount settled as donations.", max_digits=12)),
                ("is_taxable", models.BooleanField(default=False, help_text="Whether tax is added on top of donations from this config.")),
                ("special_message", models.CharField(blank=True, max_length=500)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("failed", "Failed")], default="pending", max_length=20)),
                ("processing_started_at", models.DateTimeField(blank=True, help_text="When the current processing claim was taken.", null=True)),
                ("last_month_reset", models.DateTimeField(blank=True, null=True)),
                ("last_donation_attempt", models.DateTimeField(blank=True, null=True)),
                ("last_failure_reason", models.TextField(blank=True)),
                ("last_failure_at", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True, help_text="Platform switch, cleared when the donor's plan no longer allows round-ups.")),
                ("enabled", models.BooleanField(default=True, help_text="Donor preference switch.")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("bank_connection", models.ForeignKey(blank=True, help_text="Bank item whose card purchases are rounded up.", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="roundup_configs", to="roundups.bankconnection")),
                ("user", models.ForeignKey(help_text="Donor accumulating round-ups.", on_delete=django.db.models.deletion.CASCADE, related_name="roundup_configs", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "roundup_config",
                "ordering": ["-created_at"],
                "verbose_name": "Round-up config",
                "verbose_name_plural": "Round-up configs",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(current_month_total__gte=0), name="roundup_config_total_non_negative"),
                    models.UniqueConstraint(condition=models.Q(is_active=True), fields=["user", "organization_ref", "bank_connection"], name="roundup_config_active_unique"),
                ],
                "indexes": [
                    models.Index(fields=["is_active", "enabled", "status"], name="roundup_config_state_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ScheduledDonation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("organization_ref", models.CharField(max_length=64)),
                ("cause_ref", models.CharField(blank=True, max_length=64)),
                ("amount", models.DecimalField(decimal_places=2, help_text="Pre-tax amount donated on every occurrence.", max_digits=10, validators=[django.core.validators.MinValueValidator(Decimal("1.00"))])),
                ("is_taxable", models.BooleanField(default=False)),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                ("special_message", models.CharField(blank=True, max_length=500)),
                ("frequency", models.CharField(choices=[("daily", "Daily"), ("weekly", "Weekly"), ("monthly", "Monthly"), ("quarterly", "Quarterly"), ("yearly", "Yearly"), ("custom", "Custom")], max_length=20)),
                ("custom_interval_value", models.PositiveIntegerField(blank=True, null=True)),
                ("custom_interval_unit", models.CharField(blank=True, choices=[("days", "Days"), ("weeks", "Weeks"), ("months", "Months")], max_length=10)),
                ("start_date", models.DateTimeField(default=django.utils.timezone.now)),
                ("next_donation_date", models.DateTimeField(db_index=True)),
                ("is_active", models.BooleanField(default=True)),
                ("status", models.CharField(choices=[("active", "Active"), ("processing", "Processing"), ("paused", "Paused")], default="active", max_length=20)),
                ("last_executed_at", models.DateTimeField(blank=True, null=True)),
                ("total_executions", models.PositiveIntegerField(default=0)),
                ("last_failure_reason", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="scheduled_donations", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "roundup_scheduled_donation",
                "ordering": ["next_donation_date"],
                "verbose_name": "Scheduled donation",
                "verbose_name_plural": "Scheduled donations",
                "indexes": [
                    models.Index(fields=["is_active", "status", "next_donation_date"], name="scheduled_donation_due_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Donation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("organization_ref", models.CharField(max_length=64)),
                ("cause_ref", models.CharField(blank=True, max_length=64)),
                ("donation_type", models.CharField(choices=[("round_up", "Round-up"), ("scheduled", "Scheduled")], max_length=20)),
                ("trigger", models.CharField(choices=[("threshold", "Threshold reached"), ("month_end", "Month-end sweep"), ("scheduled", "Scheduled"), ("manual", "Manual")], max_length=20)),
                ("amount", models.DecimalField(decimal_places=2, help_text="Pre-tax donation amount.", max_digits=10)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("total_amount", models.DecimalField(decimal_places=2, help_text="Amount actually charged (amount plus tax).", max_digits=10)),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=20)),
                ("stripe_payment_intent_id", models.CharField(blank=True, help_text="Stripe payment intent charging this donation.", max_length=255, null=True)),
                ("idempotency_key", models.CharField(help_text="One donation per trigger event; reused when a trigger is retried.", max_length=255, unique=True)),
                ("round_up_transaction_ids", models.JSONField(blank=True, default=list, help_text="Round-up transaction ids settled by this donation.")),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("special_message", models.CharField(blank=True, max_length=500)),
                ("failure_reason", models.TextField(blank=True)),
                ("donation_date", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("donor", models.ForeignKey(help_text="Billing profile charged for this donation.", on_delete=django.db.models.deletion.PROTECT, related_name="donations", to="billing.userbillingprofile")),
                ("roundup_config", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="donations", to="roundups.roundupconfig")),
                ("scheduled_donation", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="donations", to="roundups.scheduleddonation")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="donations", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "roundup_donation",
                "ordering": ["-created_at"],
                "verbose_name": "Donation",
                "verbose_name_plural": "Donations",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(amount__gt=0), name="donation_amount_positive"),
                    models.UniqueConstraint(condition=models.Q(stripe_payment_intent_id__isnull=False), fields=["stripe_payment_intent_id"], name="unique_donation_payment_intent"),
                ],
                "indexes": [
                    models.Index(fields=["user", "status"], name="donation_user_status_idx"),
                    models.Index(fields=["roundup_config", "status"], name="donation_config_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="RoundUpTransaction",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("transaction_id", models.CharField(help_text="Bank transaction identifier; each one is applied at most once.", max_length=255, unique=True)),
                ("original_amount", models.DecimalField(decimal_places=2, help_text="Signed bank amount; negative is outgoing spend.", max_digits=12)),
                ("round_up_amount", models.DecimalField(decimal_places=2, max_digits=6)),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=3)),
                ("transaction_date", models.DateField()),
                ("name", models.CharField(blank=True, max_length=255)),
                ("categories", models.JSONField(blank=True, default=list)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processed", "Processed"), ("donated", "Donated"), ("failed", "Failed")], default="processed", max_length=20)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255, null=True)),
                ("donation_attempted_at", models.DateTimeField(blank=True, null=True)),
                ("donated_at", models.DateTimeField(blank=True, null=True)),
                ("last_payment_failure_at", models.DateTimeField(blank=True, null=True)),
                ("last_payment_failure_reason", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("bank_connection", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="roundup_transactions", to="roundups.bankconnection")),
                ("config", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="transactions", to="roundups.roundupconfig")),
                ("donation", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="roundup_transactions", to="roundups.donation")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="roundup_transactions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "roundup_transaction",
                "ordering": ["-transaction_date", "-id"],
                "verbose_name": "Round-up transaction",
                "verbose_name_plural": "Round-up transactions",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(round_up_amount__gt=0), name="roundup_amount_positive"),
                ],
                "indexes": [
                    models.Index(fields=["user", "status"], name="roundup_tx_user_status_idx"),
                    models.Index(fields=["config", "status"], name="roundup_tx_config_status_idx"),
                    models.Index(fields=["transaction_date", "status"], name="roundup_tx_date_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="JobDefinition",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100, unique=True)),
                ("schedule", models.CharField(help_text="Cron expression the job runs on.", max_length=100)),
                ("description", models.CharField(blank=True, max_length=255)),
                ("is_enabled", models.BooleanField(default=True)),
                ("last_status", models.CharField(choices=[("never", "Never run"), ("running", "Running"), ("completed", "Completed"), ("failed", "Failed"), ("skipped", "Skipped")], default="never", max_length=20)),
                ("last_started_at", models.DateTimeField(blank=True, null=True)),
                ("last_completed_at", models.DateTimeField(blank=True, null=True)),
                ("last_total_processed", models.PositiveIntegerField(default=0)),
                ("last_success_count", models.PositiveIntegerField(default=0)),
                ("last_failure_count", models.PositiveIntegerField(default=0)),
                ("last_failure_reason", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "roundup_job_definition",
                "ordering": ["name"],
                "verbose_name": "Job definition",
                "verbose_name_plural": "Job definitions",
            },
        ),
        migrations.CreateModel(
            name="JobExecution",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(choices=[("running", "Running"), ("completed", "Completed"), ("failed", "Failed"), ("skipped", "Skipped")], default="running", max_length=20)),
                ("trigger", models.CharField(choices=[("scheduled", "Scheduled"), ("manual", "Manual")], default="scheduled", max_length=20)),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("duration_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("total_processed", models.PositiveIntegerField(default=0)),
                ("success_count", models.PositiveIntegerField(default=0)),
                ("failure_count", models.PositiveIntegerField(default=0)),
                ("error_message", models.TextField(blank=True)),
                ("details", models.JSONField(blank=True, default=dict)),
                ("job", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="executions", to="roundups.jobdefinition")),
            ],
            options={
                "db_table": "roundup_job_execution",
                "ordering": ["-started_at"],
                "verbose_name": "Job execution",
                "verbose_name_plural": "Job executions",
                "indexes": [
                    models.Index(fields=["job", "started_at"], name="job_execution_started_idx"),
                    models.Index(fields=["status"], name="job_execution_status_idx"),
                ],
            },
        ),
    ]
