from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from billing.models import UserBillingProfile
from roundups.models import BankConnection, RoundUpConfig
from .models import User


class BillingProfileInline(admin.StackedInline):
    model = UserBillingProfile
    can_delete = False
    extra = 0
    readonly_fields = ('created_at', 'updated_at')


class BankConnectionInline(admin.TabularInline):
    model = BankConnection
    extra = 0
    fields = ('institution_name', 'plaid_item_id', 'is_active', 'last_synced_at')
    readonly_fields = ('plaid_item_id', 'last_synced_at')
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


class RoundUpConfigInline(admin.TabularInline):
    model = RoundUpConfig
    fk_name = 'user'
    extra = 0
    fields = ('organization_ref', 'threshold_amount', 'current_month_total', 'status', 'is_active', 'enabled')
    readonly_fields = ('current_month_total', 'status')
    show_change_link = True


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    Donor accounts with their billing profile, bank links and round-up configs
    """
    list_display = (
        'username', 'email', 'first_name', 'last_name',
        'is_active', 'payable_display', 'created_at'
    )
    list_filter = ('is_active', 'is_staff', 'is_superuser', 'created_at')
    search_fields = ('username', 'email', 'first_name', 'last_name', 'phone')
    ordering = ('-created_at',)
    readonly_fields = ('created_at', 'updated_at')
    inlines = (BillingProfileInline, BankConnectionInline, RoundUpConfigInline)

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Contact', {'fields': ('phone',)}),
        ('Timestamps', {'fields': ('created_at', 'updated_at')}),
    )

    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ('Contact', {'fields': ('email', 'phone')}),
    )

    @admin.display(description='Payable donor', boolean=True)
    def payable_display(self, obj):
        return obj.is_payable_donor
