"""Round-up configuration, ledger, donation and job tracking models."""
import uuid
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

from billing.models import UserBillingProfile, _default_currency
from roundups import thresholds

User = get_user_model()


class BankConnection(models.Model):
    """Bank item linked through Plaid; the source of round-up transactions."""

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="bank_connections",
        help_text="Owner of the linked bank item.",
    )
    institution_name = models.CharField(
        max_length=255,
        blank=True,
        help_text="Display name of the linked institution.",
    )
    plaid_item_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Plaid item identifier.",
    )
    access_token = models.CharField(
        max_length=255,
        help_text="Plaid access token used for transaction sync.",
    )
    sync_cursor = models.TextField(
        blank=True,
        help_text="Plaid /transactions/sync cursor of the last fully applied page.",
    )
    is_active = models.BooleanField(default=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "roundup_bank_connection"
        verbose_name = "Bank connection"
        verbose_name_plural = "Bank connections"
        ordering = ["-created_at"]

    def __str__(self):
        return f"BankConnection<{self.user_id}:{self.institution_name or self.plaid_item_id}>"


class RoundUpConfigQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_active=True, enabled=True)

    def claimable(self):
        return self.filter(status__in=RoundUpConfig.CLAIMABLE_STATUSES)

    def syncable(self):
        """Active configs with a live bank link that are not mid-donation."""
        return (
            self.active()
            .filter(bank_connection__isnull=False, bank_connection__is_active=True)
            .exclude(status=RoundUpConfig.Status.PROCESSING)
        )

    def due_for_month_end(self):
        return self.active().claimable().filter(current_month_total__gt=0)

    def stalled(self, before):
        return self.filter(
            status=RoundUpConfig.Status.PROCESSING,
            processing_started_at__lt=before,
        )


class RoundUpConfig(models.Model):
    """Per-user round-up settings and the running balance of the current cycle."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        FAILED = "failed", "Failed"

    CLAIMABLE_STATUSES = (Status.PENDING, Status.FAILED)

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="roundup_configs",
        help_text="Donor accumulating round-ups.",
    )
    organization_ref = models.CharField(
        max_length=64,
        help_text="Identifier of the organization receiving donations.",
    )
    cause_ref = models.CharField(
        max_length=64,
        blank=True,
        help_text="Identifier of the cause within the organization.",
    )
    bank_connection = models.ForeignKey(
        BankConnection,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="roundup_configs",
        help_text="Bank item whose card purchases are rounded up.",
    )
    threshold_amount = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[
            MinValueValidator(thresholds.MIN_THRESHOLD),
            MaxValueValidator(thresholds.MAX_THRESHOLD),
        ],
        help_text="Balance that triggers a donation; empty means donate at month end only.",
    )
    current_month_total = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Round-ups accumulated in the current cycle and not yet donated.",
    )
    total_donated = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Lifetime round-up amount settled as donations.",
    )
    is_taxable = models.BooleanField(
        default=False,
        help_text="Whether tax is added on top of donations from this config.",
    )
    special_message = models.CharField(max_length=500, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
    )
    processing_started_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the current processing claim was taken.",
    )
    last_month_reset = models.DateTimeField(null=True, blank=True)
    last_donation_attempt = models.DateTimeField(null=True, blank=True)
    last_failure_reason = models.TextField(blank=True)
    last_failure_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(
        default=True,
        help_text="Platform switch, cleared when the donor's plan no longer allows round-ups.",
    )
    enabled = models.BooleanField(
        default=True,
        help_text="Donor preference switch.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = RoundUpConfigQuerySet.as_manager()

    class Meta:
        db_table = "roundup_config"
        verbose_name = "Round-up config"
        verbose_name_plural = "Round-up configs"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(current_month_total__gte=0),
                name="roundup_config_total_non_negative",
            ),
            models.UniqueConstraint(
                fields=["user", "organization_ref", "bank_connection"],
                condition=Q(is_active=True),
                name="roundup_config_active_unique",
            ),
        ]
        indexes = [
            models.Index(fields=["is_active", "enabled", "status"], name="roundup_config_state_idx"),
        ]

    def __str__(self):
        return f"RoundUpConfig<{self.user_id}:{self.organization_ref}:{self.status}>"

    @property
    def threshold(self) -> thresholds.Threshold:
        return thresholds.from_amount(self.threshold_amount)

    @threshold.setter
    def threshold(self, value: thresholds.Threshold) -> None:
        self.threshold_amount = thresholds.to_amount(value)

    @property
    def is_claimable(self) -> bool:
        return self.status in self.CLAIMABLE_STATUSES

    def mark_as_failed(self, reason: str) -> None:
        """Record a failed trigger; the accumulated balance is left untouched."""
        now = timezone.now()
        self.status = self.Status.FAILED
        self.last_failure_reason = (reason or "")[:1000]
        self.last_failure_at = now
        self.last_donation_attempt = now
        self.processing_started_at = None
        self.save(
            update_fields=[
                "status",
                "last_failure_reason",
                "last_failure_at",
                "last_donation_attempt",
                "processing_started_at",
                "updated_at",
            ]
        )

    def reset_to_pending(self) -> None:
        self.status = self.Status.PENDING
        self.processing_started_at = None
        self.save(update_fields=["status", "processing_started_at", "updated_at"])

    def save(self, *args, **kwargs):
        if kwargs.get("update_fields") is None:
            self.full_clean()
        return super().save(*args, **kwargs)


class ScheduledDonationQuerySet(models.QuerySet):
    def due(self, now=None):
        now = now or timezone.now()
        return self.filter(
            is_active=True,
            status=ScheduledDonation.Status.ACTIVE,
            next_donation_date__lte=now,
        )

    def stalled(self, before):
        return self.filter(
            status=ScheduledDonation.Status.PROCESSING,
            processing_started_at__lt=before,
        )


class ScheduledDonation(models.Model):
    """Recurring fixed-amount donation charged on a calendar schedule."""

    class Frequency(models.TextChoices):
        DAILY = "daily", "Daily"
        WEEKLY = "weekly", "Weekly"
        MONTHLY = "monthly", "Monthly"
        QUARTERLY = "quarterly", "Quarterly"
        YEARLY = "yearly", "Yearly"
        CUSTOM = "custom", "Custom"

    class IntervalUnit(models.TextChoices):
        DAYS = "days", "Days"
        WEEKS = "weeks", "Weeks"
        MONTHS = "months", "Months"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        PROCESSING = "processing", "Processing"
        PAUSED = "paused", "Paused"

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="scheduled_donations",
    )
    organization_ref = models.CharField(max_length=64)
    cause_ref = models.CharField(max_length=64, blank=True)
    amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("1.00"))],
        help_text="Pre-tax amount donated on every occurrence.",
    )
    is_taxable = models.BooleanField(default=False)
    currency = models.CharField(max_length=3, default=_default_currency)
    special_message = models.CharField(max_length=500, blank=True)
    frequency = models.CharField(max_length=20, choices=Frequency.choices)
    custom_interval_value = models.PositiveIntegerField(null=True, blank=True)
    custom_interval_unit = models.CharField(
        max_length=10,
        choices=IntervalUnit.choices,
        blank=True,
    )
    start_date = models.DateTimeField(default=timezone.now)
    next_donation_date = models.DateTimeField(db_index=True)
    is_active = models.BooleanField(default=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE,
    )
    last_executed_at = models.DateTimeField(null=True, blank=True)
    total_executions = models.PositiveIntegerField(default=0)
    last_failure_reason = models.TextField(blank=True)
    processing_started_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ScheduledDonationQuerySet.as_manager()

    class Meta:
        db_table = "roundup_scheduled_donation"
        verbose_name = "Scheduled donation"
        verbose_name_plural = "Scheduled donations"
        ordering = ["next_donation_date"]
        indexes = [
            models.Index(fields=["is_active", "status", "next_donation_date"], name="scheduled_donation_due_idx"),
        ]

    def __str__(self):
        return f"ScheduledDonation<{self.user_id}:{self.amount} {self.frequency}>"

    def clean(self):
        super().clean()
        if self.frequency == self.Frequency.CUSTOM and not (self.custom_interval_value and self.custom_interval_unit):
            raise ValidationError("Custom schedules require an interval value and unit.")


class Donation(models.Model):
    """A donation charged to the donor; round-up donations settle a batch of round-ups."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    class DonationType(models.TextChoices):
        ROUND_UP = "round_up", "Round-up"
        SCHEDULED = "scheduled", "Scheduled"

    class Trigger(models.TextChoices):
        THRESHOLD = "threshold", "Threshold reached"
        MONTH_END = "month_end", "Month-end sweep"
        SCHEDULED = "scheduled", "Scheduled"
        MANUAL = "manual", "Manual"

    LOCKED_STATUSES = (Status.PROCESSING, Status.COMPLETED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    donor = models.ForeignKey(
        UserBillingProfile,
        on_delete=models.PROTECT,
        related_name="donations",
        help_text="Billing profile charged for this donation.",
    )
    user = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name="donations",
    )
    organization_ref = models.CharField(max_length=64)
    cause_ref = models.CharField(max_length=64, blank=True)
    donation_type = models.CharField(max_length=20, choices=DonationType.choices)
    trigger = models.CharField(max_length=20, choices=Trigger.choices)
    roundup_config = models.ForeignKey(
        RoundUpConfig,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="donations",
    )
    scheduled_donation = models.ForeignKey(
        ScheduledDonation,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="donations",
    )
    amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Pre-tax donation amount.",
    )
    tax_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    total_amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Amount actually charged (amount plus tax).",
    )
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
    )
    stripe_payment_intent_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Stripe payment intent charging this donation.",
    )
    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="One donation per trigger event; reused when a trigger is retried.",
    )
    round_up_transaction_ids = models.JSONField(
        default=list,
        blank=True,
        help_text="Round-up transaction ids settled by this donation.",
    )
    metadata = models.JSONField(default=dict, blank=True)
    special_message = models.CharField(max_length=500, blank=True)
    failure_reason = models.TextField(blank=True)
    donation_date = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "roundup_donation"
        verbose_name = "Donation"
        verbose_name_plural = "Donations"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="donation_amount_positive"),
            models.UniqueConstraint(
                fields=["stripe_payment_intent_id"],
                condition=Q(stripe_payment_intent_id__isnull=False),
                name="unique_donation_payment_intent",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "status"], name="donation_user_status_idx"),
            models.Index(fields=["roundup_config", "status"], name="donation_config_status_idx"),
        ]

    def __str__(self):
        return f"Donation<{self.pk}:{self.total_amount} {self.status}>"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            previous = (
                Donation.objects.filter(pk=self.pk)
                .values("status", "round_up_transaction_ids")
                .first()
            )
            if (
                previous
                and previous["status"] in self.LOCKED_STATUSES
                and list(previous["round_up_transaction_ids"] or []) != list(self.round_up_transaction_ids or [])
            ):
                raise ValidationError("round_up_transaction_ids cannot change once a donation is processing.")
        return super().save(*args, **kwargs)


class RoundUpTransactionQuerySet(models.QuerySet):
    def outstanding_for(self, config):
        """Rows of ``config`` that have not yet joined a donation batch."""
        return self.filter(
            config=config,
            status=RoundUpTransaction.Status.PROCESSED,
            stripe_payment_intent_id__isnull=True,
            donation__isnull=True,
        )


class RoundUpTransaction(models.Model):
    """One eligible bank transaction and the round-up it contributed."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSED = "processed", "Processed"
        DONATED = "donated", "Donated"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    transaction_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Bank transaction identifier; each one is applied at most once.",
    )
    config = models.ForeignKey(
        RoundUpConfig,
        on_delete=models.CASCADE,
        related_name="transactions",
    )
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="roundup_transactions",
    )
    bank_connection = models.ForeignKey(
        BankConnection,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="roundup_transactions",
    )
    original_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Signed bank amount; negative is outgoing spend.",
    )
    round_up_amount = models.DecimalField(max_digits=6, decimal_places=2)
    currency = models.CharField(max_length=3, default=_default_currency)
    transaction_date = models.DateField()
    name = models.CharField(max_length=255, blank=True)
    categories = models.JSONField(default=list, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PROCESSED,
    )
    donation = models.ForeignKey(
        Donation,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="roundup_transactions",
    )
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True, null=True)
    donation_attempted_at = models.DateTimeField(null=True, blank=True)
    donated_at = models.DateTimeField(null=True, blank=True)
    last_payment_failure_at = models.DateTimeField(null=True, blank=True)
    last_payment_failure_reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = RoundUpTransactionQuerySet.as_manager()

    class Meta:
        db_table = "roundup_transaction"
        verbose_name = "Round-up transaction"
        verbose_name_plural = "Round-up transactions"
        ordering = ["-transaction_date", "-id"]
        constraints = [
            models.CheckConstraint(condition=Q(round_up_amount__gt=0), name="roundup_amount_positive"),
        ]
        indexes = [
            models.Index(fields=["user", "status"], name="roundup_tx_user_status_idx"),
            models.Index(fields=["config", "status"], name="roundup_tx_config_status_idx"),
            models.Index(fields=["transaction_date", "status"], name="roundup_tx_date_status_idx"),
        ]

    def __str__(self):
        return f"RoundUpTransaction<{self.transaction_id}:{self.round_up_amount}>"


class JobDefinition(models.Model):
    """A recurring job and the outcome of its latest execution."""

    class LastStatus(models.TextChoices):
        NEVER = "never", "Never run"
        RUNNING = "running", "Running"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        SKIPPED = "skipped", "Skipped"

    name = models.CharField(max_length=100, unique=True)
    schedule = models.CharField(max_length=100, help_text="Cron expression the job runs on.")
    description = models.CharField(max_length=255, blank=True)
    is_enabled = models.BooleanField(default=True)
    last_status = models.CharField(
        max_length=20,
        choices=LastStatus.choices,
        default=LastStatus.NEVER,
    )
    last_started_at = models.DateTimeField(null=True, blank=True)
    last_completed_at = models.DateTimeField(null=True, blank=True)
    last_total_processed = models.PositiveIntegerField(default=0)
    last_success_count = models.PositiveIntegerField(default=0)
    last_failure_count = models.PositiveIntegerField(default=0)
    last_failure_reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "roundup_job_definition"
        verbose_name = "Job definition"
        verbose_name_plural = "Job definitions"
        ordering = ["name"]

    def __str__(self):
        return f"JobDefinition<{self.name}>"


class JobExecution(models.Model):
    """A single run of a recurring job."""

    class Status(models.TextChoices):
        RUNNING = "running", "Running"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        SKIPPED = "skipped", "Skipped"

    class Trigger(models.TextChoices):
        SCHEDULED = "scheduled", "Scheduled"
        MANUAL = "manual", "Manual"

    job = models.ForeignKey(
        JobDefinition,
        on_delete=models.CASCADE,
        related_name="executions",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RUNNING,
    )
    trigger = models.CharField(
        max_length=20,
        choices=Trigger.choices,
        default=Trigger.SCHEDULED,
    )
    started_at = models.DateTimeField(default=timezone.now)
    finished_at = models.DateTimeField(null=True, blank=True)
    duration_ms = models.PositiveIntegerField(null=True, blank=True)
    total_processed = models.PositiveIntegerField(default=0)
    success_count = models.PositiveIntegerField(default=0)
    failure_count = models.PositiveIntegerField(default=0)
    error_message = models.TextField(blank=True)
    details = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "roundup_job_execution"
        verbose_name = "Job execution"
        verbose_name_plural = "Job executions"
        ordering = ["-started_at"]
        indexes = [
            models.Index(fields=["job", "started_at"], name="job_execution_started_idx"),
            models.Index(fields=["status"], name="job_execution_status_idx"),
        ]

    def __str__(self):
        return f"JobExecution<{self.job_id}:{self.status}>"
