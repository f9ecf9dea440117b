"""Billing models for donor payment profiles, webhook logging, and audit trails."""
from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import models

User = get_user_model()


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "STRIPE_CURRENCY", "aud").lower()


class UserBillingProfile(models.Model):
    """User-scoped Stripe billing profile used to charge donations off-session."""

    user = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        related_name="billing_profile",
        help_text="User owning this billing profile.",
    )
    stripe_customer_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe customer identifier tied to this user.",
    )
    default_payment_method_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Saved payment method charged for automatic donations.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_user_profile"
        verbose_name = "User billing profile"
        verbose_name_plural = "User billing profiles"
        ordering = ["user__id"]

    def __str__(self):
        return f"UserBillingProfile<{self.user_id}>"

    @property
    def is_payable(self) -> bool:
        """True when the profile can be charged without the donor present."""
        return bool(self.stripe_customer_id and self.default_payment_method_id)

    @classmethod
    def get_or_create_for_user(cls, user: User) -> "UserBillingProfile":
        """Ensure a billing profile exists for the given user."""
        profile, _ = cls.objects.get_or_create(user=user)
        return profile


class WebhookEventLog(models.Model):
    """Keeps track of processed webhook events to guarantee idempotency."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSING = "processing", "Processing"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Deterministic key to guard downstream handlers.",
    )
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the raw payload for drift detection.",
    )
    event_type = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
    )
    last_error = models.TextField(blank=True)
    attempts = models.PositiveIntegerField(
        default=0,
        help_text="Number of processing attempts made for this event.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    handled = models.BooleanField(
        default=False,
        help_text="True once the event has been fully processed.",
    )
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_webhook_event_log"
        verbose_name = "Webhook event log"
        verbose_name_plural = "Webhook event logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="webhook_event_status_idx"),
            models.Index(fields=["event_type"], name="webhook_event_type_idx"),
        ]

    def __str__(self):
        return f"WebhookEventLog<{self.event_id}:{self.status}>"


class BillingAuditLog(models.Model):
    """Structured audit log for donation and payment lifecycle events."""

    id = models.BigAutoField(primary_key=True)
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="billing_audit_logs",
        help_text="Donor associated with the event.",
    )
    event_type = models.CharField(max_length=100, help_text="Classification of the billing event.")
    stripe_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Stripe object identifier tied to the event.",
    )
    actor = models.CharField(
        max_length=255,
        blank=True,
        help_text="Auth user or system actor responsible.",
    )
    request_id = models.CharField(
        max_length=255,
        blank=True,
        help_text="Correlation or request identifier for tracing.",
    )
    details = models.JSONField(
        blank=True,
        null=True,
        help_text="Structured data describing the event.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_log"
        verbose_name = "Billing audit log"
        verbose_name_plural = "Billing audit logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "event_type"], name="billing_audit_user_event_idx"),
            models.Index(fields=["stripe_id"], name="billing_audit_stripe_idx"),
        ]

    def __str__(self):
        return f"BillingAuditLog<{self.user_id}:{self.event_type}>"


class BillingEventDeadLetter(models.Model):
    """Stripe events whose donation could not be settled, kept for replay."""

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=255, blank=True)
    payment_intent_id = models.CharField(
        max_length=255,
        blank=True,
        db_index=True,
        help_text="Payment intent referenced by the event, used to match it to a donation.",
    )
    payload = models.JSONField(help_text="Raw event payload that failed processing.")
    failure_reason = models.TextField(help_text="Summary of why handling failed.")
    retry_count = models.PositiveIntegerField(default=0)
    last_attempt_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Most recent attempt timestamp.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_event_dead_letter"
        verbose_name = "Billing dead-letter event"
        verbose_name_plural = "Billing dead-letter events"
        ordering = ["-created_at"]

    def __str__(self):
        return f"BillingEventDeadLetter<{self.event_id}>"
