from django.contrib import admin

from .models import BillingItem, BillingRecord, LedgerAuditEntry, Payment, PhysicianPayout


class ReadOnlyLedgerAdmin(admin.ModelAdmin):
    """
    Ledger rows are written only through the billing services.

    SECURITY: the admin can inspect but never add, edit or delete, so the
    payment log stays append-only and every write keeps its audit entry.
    """

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class BillingItemInline(admin.TabularInline):
    model = BillingItem
    extra = 0
    fields = ['position', 'item_type', 'item_name', 'quantity', 'unit_price', 'line_total']
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    fields = ['sequence', 'kind', 'method', 'amount', 'payment_date', 'caused_overpayment', 'created_by']
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(BillingRecord)
class BillingRecordAdmin(ReadOnlyLedgerAdmin):
    list_display = ['billing_number', 'patient_ref', 'doctor_ref', 'billing_type', 'billing_date',
                    'due_date', 'total_amount', 'terminal_status']
    list_filter = ['billing_type', 'terminal_status', 'billing_date']
    search_fields = ['billing_number', 'patient_ref', 'doctor_ref']
    inlines = [BillingItemInline, PaymentInline]

    fieldsets = (
        ('Basic Information', {
            'fields': ('id', 'billing_number', 'patient_ref', 'doctor_ref', 'billing_type',
                       'billing_date', 'due_date')
        }),
        ('Financial', {
            'fields': ('currency', 'subtotal_amount', 'tax_amount', 'discount_amount', 'total_amount')
        }),
        ('Insurance', {
            'fields': ('insurance_company', 'insurance_number'),
            'classes': ('collapse',)
        }),
        ('Status', {
            'fields': ('terminal_status', 'status_reason', 'status_changed_at', 'status_changed_by')
        }),
        ('Timestamps', {
            'fields': ('created_by', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )


@admin.register(Payment)
class PaymentAdmin(ReadOnlyLedgerAdmin):
    list_display = ['billing', 'sequence', 'kind', 'method', 'amount', 'payment_date', 'caused_overpayment']
    list_filter = ['kind', 'method', 'caused_overpayment']
    search_fields = ['billing__billing_number']


@admin.register(PhysicianPayout)
class PhysicianPayoutAdmin(ReadOnlyLedgerAdmin):
    list_display = ['payout_number', 'doctor_ref', 'period_start', 'period_end',
                    'gross_revenue', 'facility_fee', 'net_payout', 'status']
    list_filter = ['status']
    search_fields = ['payout_number', 'doctor_ref']


@admin.register(LedgerAuditEntry)
class LedgerAuditEntryAdmin(ReadOnlyLedgerAdmin):
    list_display = ['created_at', 'action', 'entity_type', 'entity_id', 'actor']
    list_filter = ['action', 'entity_type']
