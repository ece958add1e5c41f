"""Billing serializers."""
from rest_framework import ISO_8601, serializers

from .models import (
    BillingItem,
    BillingRecord,
    BillingStatusChoices,
    BillingTypeChoices,
    ItemTypeChoices,
    Payment,
    PaymentMethodChoices,
    PhysicianPayout,
)


# ============================================================================
# Money fields
# ============================================================================

class MoneyField(serializers.Field):
    """Read-only Money rendered as {"amount": <int minor units>, "currency": "BRL"}."""

    def __init__(self, **kwargs):
        kwargs['read_only'] = True
        super().__init__(**kwargs)

    def to_representation(self, value):
        return value.to_dict()


class StrictIntegerField(serializers.IntegerField):
    """IntegerField that refuses JSON floats (10.0 included) and booleans."""

    def to_internal_value(self, data):
        if isinstance(data, (float, bool)):
            self.fail('invalid')
        return super().to_internal_value(data)


class MinorUnitsField(StrictIntegerField):
    """Monetary request field: an integer of minor units (15000 == 150.00)."""

    default_error_messages = {
        'invalid': 'Monetary amounts are integers in minor units (e.g. 15000 for 150.00), never decimals.',
    }


class PaymentDateField(serializers.DateTimeField):
    """Payment date/time: an ISO-8601 timestamp, or a plain date meaning local midnight."""

    def __init__(self, **kwargs):
        kwargs.setdefault('input_formats', [ISO_8601, '%Y-%m-%d'])
        super().__init__(**kwargs)


# ============================================================================
# Billing records
# ============================================================================

class BillingItemSerializer(serializers.ModelSerializer):
    unit_price = MoneyField(source='unit_price_money')
    line_total = MoneyField(source='line_total_money')

    class Meta:
        model = BillingItem
        fields = ['id', 'position', 'item_type', 'item_name', 'quantity', 'unit_price', 'line_total']
        read_only_fields = fields


class BillingItemInputSerializer(serializers.Serializer):
    item_type = serializers.ChoiceField(choices=ItemTypeChoices.choices)
    item_name = serializers.CharField(max_length=255)
    quantity = StrictIntegerField(
        min_value=1,
        default=1,
        help_text='Quantity must be a positive integer (no decimals)'
    )
    unit_price = MinorUnitsField(min_value=0)


class BillingCreateSerializer(serializers.Serializer):
    """
    Input of POST /billings/.

    Totals are never accepted from the client; they are computed from items.
    """
    patient_ref = serializers.CharField(max_length=64)
    doctor_ref = serializers.CharField(max_length=64)
    billing_type = serializers.ChoiceField(choices=BillingTypeChoices.choices)
    items = BillingItemInputSerializer(many=True, allow_empty=False)
    billing_date = serializers.DateField(required=False)
    due_date = serializers.DateField()
    tax_amount = MinorUnitsField(min_value=0, default=0)
    discount_amount = MinorUnitsField(min_value=0, default=0)
    insurance_company = serializers.CharField(max_length=255, required=False, allow_blank=True)
    insurance_number = serializers.CharField(max_length=100, required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class BillingRecordSerializer(serializers.ModelSerializer):
    """Billing record with derived amounts and status."""
    items = BillingItemSerializer(many=True, read_only=True)
    subtotal_amount = MoneyField(source='subtotal')
    tax_amount = MoneyField(source='tax')
    discount_amount = MoneyField(source='discount')
    total_amount = MoneyField(source='total')
    paid_amount = MoneyField(source='paid')
    balance_amount = MoneyField(source='balance')
    display_balance = MoneyField()
    overpayment_amount = MoneyField(source='overpayment')
    is_overpaid = serializers.BooleanField(read_only=True)
    status = serializers.CharField(read_only=True)

    class Meta:
        model = BillingRecord
        fields = [
            'id', 'billing_number', 'patient_ref', 'doctor_ref', 'billing_type',
            'billing_date', 'due_date', 'currency',
            'subtotal_amount', 'tax_amount', 'discount_amount', 'total_amount',
            'paid_amount', 'balance_amount', 'display_balance', 'overpayment_amount', 'is_overpaid',
            'status', 'status_reason', 'status_changed_at',
            'insurance_company', 'insurance_number', 'notes',
            'items', 'created_at', 'updated_at',
        ]
        read_only_fields = fields


class BillingListQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)
    billing_type = serializers.ChoiceField(choices=BillingTypeChoices.choices, required=False)
    status = serializers.ChoiceField(choices=BillingStatusChoices.choices, required=False)
    doctor = serializers.CharField(required=False)
    patient = serializers.CharField(required=False)


class StatusCommandSerializer(serializers.Serializer):
    """Input of cancel/dispute. A reason is always required."""
    reason = serializers.CharField(help_text='Why the billing record changes status')


class RefundSerializer(StatusCommandSerializer):
    method = serializers.ChoiceField(choices=PaymentMethodChoices.choices)
    payment_date = PaymentDateField(required=False)


# ============================================================================
# Payment ledger
# ============================================================================

class PaymentSerializer(serializers.ModelSerializer):
    amount = MoneyField(source='money')

    class Meta:
        model = Payment
        fields = [
            'id', 'sequence', 'kind', 'method', 'amount', 'payment_date',
            'transaction_id', 'bank_name', 'account_number', 'check_number',
            'notes', 'caused_overpayment', 'created_at',
        ]
        read_only_fields = fields


class PaymentCreateSerializer(serializers.Serializer):
    """
    Input of POST /billings/{id}/payment/.

    The sign of `amount` is checked by the ledger (invalid_amount), not here,
    so callers get one error type for every bad amount.
    """
    amount = MinorUnitsField()
    method = serializers.ChoiceField(choices=PaymentMethodChoices.choices)
    payment_date = PaymentDateField(required=False)
    transaction_id = serializers.CharField(max_length=128, required=False, allow_blank=True)
    bank_name = serializers.CharField(max_length=128, required=False, allow_blank=True)
    account_number = serializers.CharField(max_length=64, required=False, allow_blank=True)
    check_number = serializers.CharField(max_length=64, required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class CorrectionCreateSerializer(serializers.Serializer):
    amount = MinorUnitsField(help_text='Negative amount in minor units')
    reason = serializers.CharField()
    payment_date = PaymentDateField(required=False)


# ============================================================================
# Receivables
# ============================================================================

class AccountsReceivableSerializer(serializers.Serializer):
    billing_id = serializers.UUIDField()
    billing_number = serializers.CharField()
    patient_ref = serializers.CharField()
    doctor_ref = serializers.CharField()
    billing_date = serializers.DateField()
    due_date = serializers.DateField()
    original_amount = MoneyField()
    outstanding_amount = MoneyField()
    days_overdue = serializers.IntegerField()
    aging_bucket = serializers.CharField()
    status = serializers.CharField()


class AgingSummarySerializer(serializers.Serializer):
    as_of = serializers.DateField()
    buckets = serializers.SerializerMethodField()
    total_outstanding = MoneyField()
    total_overdue = MoneyField()
    record_count = serializers.IntegerField()

    def get_buckets(self, obj):
        return {
            name: {'amount': bucket['amount'].to_dict(), 'count': bucket['count']}
            for name, bucket in obj['buckets'].items()
        }


class AsOfQuerySerializer(serializers.Serializer):
    as_of = serializers.DateField(required=False)


# ============================================================================
# Payouts
# ============================================================================

class PhysicianPayoutSerializer(serializers.ModelSerializer):
    gross_revenue = MoneyField(source='gross')
    facility_fee = MoneyField(source='fee')
    net_payout = MoneyField(source='net')
    is_paid = serializers.BooleanField(read_only=True)
    billing_numbers = serializers.SlugRelatedField(
        source='billings',
        slug_field='billing_number',
        many=True,
        read_only=True,
    )

    class Meta:
        model = PhysicianPayout
        fields = [
            'id', 'payout_number', 'doctor_ref', 'period_start', 'period_end',
            'gross_revenue', 'facility_fee', 'net_payout',
            'consultation_count', 'procedure_count', 'fee_policy',
            'status', 'is_paid', 'payout_date', 'billing_numbers',
            'calculated_at', 'created_at', 'updated_at',
        ]
        read_only_fields = fields


class FeePolicyInputSerializer(serializers.Serializer):
    type = serializers.ChoiceField(choices=[('percentage', 'Percentage'), ('flat', 'Flat')])
    rate = serializers.CharField(required=False, help_text='Percent as a decimal string, e.g. "20" or "12.5"')
    amount = MinorUnitsField(required=False, min_value=0)

    def validate(self, attrs):
        if attrs['type'] == 'percentage' and not attrs.get('rate'):
            raise serializers.ValidationError({'rate': 'Percentage fee policy requires a rate'})
        if attrs['type'] == 'flat' and attrs.get('amount') is None:
            raise serializers.ValidationError({'amount': 'Flat fee policy requires an amount'})
        return attrs


class PayoutCalculateSerializer(serializers.Serializer):
    doctor_ref = serializers.CharField(max_length=64)
    period_start = serializers.DateField()
    period_end = serializers.DateField()
    fee_policy = FeePolicyInputSerializer(required=False)


class MarkPayoutPaidSerializer(serializers.Serializer):
    payment_date = serializers.DateField(required=False)


class PayoutListQuerySerializer(serializers.Serializer):
    doctor = serializers.CharField(required=False)
    # BooleanField reads a missing query param as False
    is_paid = serializers.ChoiceField(choices=[('true', 'true'), ('false', 'false')], required=False)


# ============================================================================
# Dashboard
# ============================================================================

class DashboardQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField()
    date_to = serializers.DateField()
    as_of = serializers.DateField(required=False)


class DashboardSerializer(serializers.Serializer):
    date_from = serializers.DateField()
    date_to = serializers.DateField()
    as_of = serializers.DateField()
    total_revenue = MoneyField()
    total_payments = MoneyField()
    outstanding_receivables = MoneyField()
    overdue_receivables = MoneyField()
    total_expenses = MoneyField()
    net_profit = MoneyField()


class ChartQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField()
    date_to = serializers.DateField()


class ChartMonthSerializer(serializers.Serializer):
    month = serializers.CharField()
    period_start = serializers.DateField()
    period_end = serializers.DateField()
    revenue = MoneyField()
    expenses = MoneyField()
    net_profit = MoneyField()


class RevenueExpenseChartSerializer(serializers.Serializer):
    date_from = serializers.DateField()
    date_to = serializers.DateField()
    monthly_data = ChartMonthSerializer(many=True)
    total_revenue = MoneyField()
    total_expenses = MoneyField()
    net_profit = MoneyField()
