from django.contrib import admin

from .models import (
    BankConnection,
    Donation,
    JobDefinition,
    JobExecution,
    RoundUpConfig,
    RoundUpTransaction,
    ScheduledDonation,
)


class ReadOnlyAdminMixin:
    """Financial records are written by the pipeline only."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(BankConnection)
class BankConnectionAdmin(admin.ModelAdmin):
    list_display = ("user", "institution_name", "plaid_item_id", "is_active", "last_synced_at")
    search_fields = ("user__email", "institution_name", "plaid_item_id")
    list_filter = ("is_active", "last_synced_at")
    readonly_fields = ("sync_cursor", "last_synced_at", "created_at", "updated_at")
    exclude = ("access_token",)
    raw_id_fields = ("user",)


@admin.register(RoundUpConfig)
class RoundUpConfigAdmin(admin.ModelAdmin):
    list_display = (
        "user",
        "organization_ref",
        "threshold_amount",
        "current_month_total",
        "total_donated",
        "status",
        "enabled",
        "is_active",
    )
    search_fields = ("user__email", "organization_ref", "cause_ref")
    list_filter = ("status", "enabled", "is_active", "is_taxable")
    readonly_fields = (
        "current_month_total",
        "total_donated",
        "status",
        "processing_started_at",
        "last_month_reset",
        "last_donation_attempt",
        "last_failure_reason",
        "last_failure_at",
        "created_at",
        "updated_at",
    )
    raw_id_fields = ("user", "bank_connection")
    list_select_related = ("user",)

    fieldsets = (
        (
            "Donor",
            {"fields": ("user", "bank_connection", "organization_ref", "cause_ref", "special_message")},
        ),
        (
            "Settings",
            {"fields": ("threshold_amount", "is_taxable", "enabled", "is_active")},
        ),
        (
            "Accumulation",
            {"fields": ("current_month_total", "total_donated", "status", "processing_started_at", "last_month_reset")},
        ),
        (
            "Failures",
            {"fields": ("last_donation_attempt", "last_failure_reason", "last_failure_at")},
        ),
    )


@admin.register(ScheduledDonation)
class ScheduledDonationAdmin(admin.ModelAdmin):
    list_display = ("user", "organization_ref", "amount", "frequency", "next_donation_date", "status", "is_active")
    search_fields = ("user__email", "organization_ref")
    list_filter = ("frequency", "status", "is_active")
    readonly_fields = (
        "status",
        "last_executed_at",
        "total_executions",
        "last_failure_reason",
        "processing_started_at",
        "created_at",
        "updated_at",
    )
    raw_id_fields = ("user",)


@admin.register(Donation)
class DonationAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "donation_type",
        "trigger",
        "amount",
        "total_amount",
        "status",
        "donation_date",
    )
    search_fields = ("id", "user__email", "stripe_payment_intent_id", "idempotency_key")
    list_filter = ("status", "donation_type", "trigger", "donation_date")
    ordering = ("-donation_date",)
    list_select_related = ("user",)


@admin.register(RoundUpTransaction)
class RoundUpTransactionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("transaction_id", "user", "original_amount", "round_up_amount", "status", "transaction_date")
    search_fields = ("transaction_id", "user__email", "name")
    list_filter = ("status", "transaction_date")
    ordering = ("-transaction_date",)
    list_select_related = ("user",)


class JobExecutionInline(admin.TabularInline):
    model = JobExecution
    extra = 0
    can_delete = False
    ordering = ("-started_at",)
    fields = ("status", "trigger", "started_at", "duration_ms", "total_processed", "success_count", "failure_count")
    readonly_fields = fields
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(JobDefinition)
class JobDefinitionAdmin(admin.ModelAdmin):
    list_display = ("name", "schedule", "is_enabled", "last_status", "last_completed_at", "last_failure_count")
    list_filter = ("is_enabled", "last_status")
    readonly_fields = (
        "last_status",
        "last_started_at",
        "last_completed_at",
        "last_total_processed",
        "last_success_count",
        "last_failure_count",
        "last_failure_reason",
        "created_at",
        "updated_at",
    )
    inlines = [JobExecutionInline]


@admin.register(JobExecution)
class JobExecutionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("job", "status", "trigger", "started_at", "duration_ms", "total_processed", "failure_count")
    list_filter = ("status", "trigger", "job")
    ordering = ("-started_at",)
    list_select_related = ("job",)
