import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="UserBillingProfile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("stripe_customer_id", models.CharField(blank=True, help_text="Stripe customer identifier tied to this user.", max_length=255)),
                ("default_payment_method_id", models.CharField(blank=True, help_text="Saved payment method charged for automatic donations.", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.OneToOneField(help_text="User owning this billing profile.", on_delete=django.db.models.deletion.CASCADE, related_name="billing_profile", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_user_profile",
                "ordering": ["user__id"],
                "verbose_name": "User billing profile",
                "verbose_name_plural": "User billing profiles",
            },
        ),
        migrations.CreateModel(
            name="WebhookEventLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("idempotency_key", models.CharField(blank=True, help_text="Deterministic key to guard downstream handlers.", max_length=255, null=True)),
                ("payload_hash", models.CharField(blank=True, help_text="SHA256 of the raw payload for drift detection.", max_length=64)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("status", models.CharField(choices=[("received", "Received"), ("processing", "Processing"), ("processed", "Processed"), ("ignored", "Ignored"), ("failed", "Failed")], default="received", max_length=20)),
                ("last_error", models.TextField(blank=True)),
                ("attempts", models.PositiveIntegerField(default=0, help_text="Number of processing attempts made for this event.")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("handled", models.BooleanField(default=False, help_text="True once the event has been fully processed.")),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "billing_webhook_event_log",
                "ordering": ["-created_at"],
                "verbose_name": "Webhook event log",
                "verbose_name_plural": "Webhook event logs",
                "indexes": [
                    models.Index(fields=["status"], name="webhook_event_status_idx"),
                    models.Index(fields=["event_type"], name="webhook_event_type_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingAuditLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_type", models.CharField(help_text="Classification of the billing event.", max_length=100)),
                ("stripe_id", models.CharField(blank=True, help_text="Stripe object identifier tied to the event.", max_length=255)),
                ("actor", models.CharField(blank=True, help_text="Auth user or system actor responsible.", max_length=255)),
                ("request_id", models.CharField(blank=True, help_text="Correlation or request identifier for tracing.", max_length=255)),
                ("details", models.JSONField(blank=True, help_text="Structured data describing the event.", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.ForeignKey(blank=True, help_text="Donor associated with the event.", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="billing_audit_logs", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "billing_audit_log",
                "ordering": ["-created_at"],
                "verbose_name": "Billing audit log",
                "verbose_name_plural": "Billing audit logs",
                "indexes": [
                    models.Index(fields=["user", "event_type"], name="billing_audit_user_event_idx"),
                    models.Index(fields=["stripe_id"], name="billing_audit_stripe_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingEventDeadLetter",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("payment_intent_id", models.CharField(blank=True, db_index=True, help_text="Payment intent referenced by the event, used to match it to a donation.", max_length=255)),
                ("payload", models.JSONField(help_text="Raw event payload that failed processing.")),
                ("failure_reason", models.TextField(help_text="Summary of why handling failed.")),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("last_attempt_at", models.DateTimeField(blank=True, help_text="Most recent attempt timestamp.", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "billing_event_dead_letter",
                "ordering": ["-created_at"],
                "verbose_name": "Billing dead-letter event",
                "verbose_name_plural": "Billing dead-letter events",
            },
        ),
    ]
