from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import (
    BillingAuditLog,
    BillingEventDeadLetter,
    UserBillingProfile,
    WebhookEventLog,
)


def _user_link(user_id, label):
    if not user_id:
        return "-"
    url = reverse("admin:accounts_user_change", args=[user_id])
    return format_html('<a href="{}">{}</a>', url, label)


@admin.register(UserBillingProfile)
class UserBillingProfileAdmin(admin.ModelAdmin):
    list_display = (
        "user",
        "stripe_customer_id",
        "default_payment_method_id",
        "payable_display",
        "updated_at",
    )
    search_fields = (
        "user__username",
        "user__email",
        "stripe_customer_id",
    )
    list_filter = ("updated_at",)
    readonly_fields = ("created_at", "updated_at")
    ordering = ("user__username",)
    list_select_related = ("user",)
    raw_id_fields = ("user",)

    @admin.display(description="Payable?", boolean=True)
    def payable_display(self, obj):
        return obj.is_payable


@admin.register(WebhookEventLog)
class WebhookEventLogAdmin(admin.ModelAdmin):
    """Monitor webhook processing progress and failures."""

    list_display = (
        "event_id",
        "event_type",
        "status",
        "handled",
        "attempts",
        "created_at",
        "processed_at",
        "last_error_short",
    )
    search_fields = ("event_id", "event_type", "idempotency_key")
    list_filter = ("status", "handled", "event_type", "created_at")
    readonly_fields = (
        "event_id",
        "event_type",
        "status",
        "idempotency_key",
        "payload_hash",
        "attempts",
        "created_at",
        "processed_at",
        "last_error",
    )
    ordering = ("-created_at",)

    fieldsets = (
        (
            "Event",
            {"fields": ("event_id", "event_type", "status", "handled")},
        ),
        (
            "Idempotency",
            {"fields": ("idempotency_key", "payload_hash", "attempts")},
        ),
        (
            "Processing",
            {"fields": ("last_error", "created_at", "processed_at")},
        ),
    )

    @admin.display(description="Last Error")
    def last_error_short(self, obj):
        if not obj.last_error:
            return "-"
        snippet = obj.last_error.strip().splitlines()[0]
        if len(snippet) > 120:
            snippet = f"{snippet[:117]}..."
        return snippet


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(admin.ModelAdmin):
    """Audit log explorer for donation and payment events."""

    list_display = (
        "user_link",
        "event_type",
        "stripe_id",
        "actor",
        "created_at",
    )
    search_fields = ("event_type", "stripe_id", "user__email", "actor", "request_id")
    list_filter = ("event_type", "actor", "created_at")
    readonly_fields = ("user", "event_type", "stripe_id", "actor", "request_id", "details", "created_at")
    ordering = ("-created_at",)
    raw_id_fields = ("user",)

    fieldsets = (
        (
            "Event",
            {"fields": ("user", "event_type", "actor", "request_id")},
        ),
        (
            "Stripe",
            {"fields": ("stripe_id",)},
        ),
        (
            "Details",
            {"fields": ("details", "created_at")},
        ),
    )

    @admin.display(description="User")
    def user_link(self, obj):
        return _user_link(obj.user_id, obj.user)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(BillingEventDeadLetter)
class BillingEventDeadLetterAdmin(admin.ModelAdmin):
    """Allow support to inspect dead-lettered webhook events before replaying them."""

    list_display = (
        "event_id",
        "event_type",
        "payment_intent_id",
        "retry_count",
        "last_attempt_at",
        "created_at",
    )
    search_fields = ("event_id", "event_type", "payment_intent_id", "failure_reason")
    list_filter = ("event_type", "retry_count", "created_at")
    readonly_fields = (
        "event_id",
        "event_type",
        "payment_intent_id",
        "payload",
        "failure_reason",
        "retry_count",
        "last_attempt_at",
        "created_at",
    )
    ordering = ("-created_at",)

    fieldsets = (
        (
            "Event",
            {"fields": ("event_id", "event_type", "payment_intent_id", "retry_count", "last_attempt_at", "created_at")},
        ),
        (
            "Payload",
            {"fields": ("payload", "failure_reason")},
        ),
    )
