"""Billing ledger models - billing records, payments, payouts, audit trail."""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .money import Money


class BillingTypeChoices(models.TextChoices):
    TISS = 'tiss', _('TISS')
    PRIVATE = 'private', _('Private')
    CASH = 'cash', _('Cash')
    INSURANCE = 'insurance', _('Insurance')
    CORPORATE = 'corporate', _('Corporate')


class ItemTypeChoices(models.TextChoices):
    CONSULTATION = 'consultation', _('Consultation')
    PROCEDURE = 'procedure', _('Procedure')
    EXAM = 'exam', _('Exam')
    MEDICATION = 'medication', _('Medication')
    MATERIAL = 'material', _('Material')
    OTHER = 'other', _('Other')


class BillingStatusChoices(models.TextChoices):
    """
    Billing status.

    pending/paid/overdue are derived on read from (balance, due_date, today).
    cancelled/disputed/refunded are explicit commands stored on the record.

    Transitions:
    - pending -> paid (balance reaches 0), overdue (due date passed)
    - pending/overdue -> cancelled
    - pending/overdue/paid -> disputed
    - paid -> refunded
    """
    PENDING = 'pending', _('Pending')
    PAID = 'paid', _('Paid')
    OVERDUE = 'overdue', _('Overdue')
    CANCELLED = 'cancelled', _('Cancelled')
    DISPUTED = 'disputed', _('Disputed')
    REFUNDED = 'refunded', _('Refunded')


class TerminalStatusChoices(models.TextChoices):
    CANCELLED = 'cancelled', _('Cancelled')
    DISPUTED = 'disputed', _('Disputed')
    REFUNDED = 'refunded', _('Refunded')


CLOSED_STATUSES = (BillingStatusChoices.CANCELLED, BillingStatusChoices.REFUNDED)


class PaymentMethodChoices(models.TextChoices):
    CASH = 'cash', _('Cash')
    CREDIT_CARD = 'credit_card', _('Credit card')
    DEBIT_CARD = 'debit_card', _('Debit card')
    BANK_TRANSFER = 'bank_transfer', _('Bank transfer')
    CHECK = 'check', _('Check')
    PIX = 'pix', _('PIX')
    BOLETO = 'boleto', _('Boleto')


class PaymentKindChoices(models.TextChoices):
    PAYMENT = 'payment', _('Payment')
    CORRECTION = 'correction', _('Correction')
    REFUND = 'refund', _('Refund')


class PayoutStatusChoices(models.TextChoices):
    PENDING = 'pending', _('Pending')
    PAID = 'paid', _('Paid')


class BillingRecordQuerySet(models.QuerySet):

    def with_balances(self):
        """Annotate the payment-log sum so list views avoid one query per record."""
        return self.annotate(
            paid_cents_annotated=Coalesce(Sum('payments__amount'), Value(0), output_field=models.BigIntegerField())
        )

    def not_closed(self):
        return self.exclude(terminal_status__in=CLOSED_STATUSES)


class BillingRecord(models.Model):
    """
    One billable encounter / invoice.

    Business Rules:
    - total = sum(line totals) + tax - discount, and total >= 0
    - paid amount is always the sum of the payment log, never stored
    - once cancelled or refunded, no payment may be applied
    - never physically deleted; cancellation is a status
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    billing_number = models.CharField(
        _('Billing Number'),
        max_length=32,
        unique=True,
        editable=False,
        help_text=_('Human-readable billing number (e.g., BIL-2026-000001)')
    )

    # External references (clinical/encounter collaborator)
    patient_ref = models.CharField(_('Patient'), max_length=64, db_index=True)
    doctor_ref = models.CharField(_('Doctor'), max_length=64, db_index=True)

    billing_type = models.CharField(
        _('Billing Type'),
        max_length=20,
        choices=BillingTypeChoices.choices,
    )
    billing_date = models.DateField(_('Billing Date'))
    due_date = models.DateField(_('Due Date'))

    # Financial fields (minor units)
    currency = models.CharField(_('Currency'), max_length=3)
    subtotal_amount = models.BigIntegerField(_('Subtotal'), help_text=_('Sum of line totals'))
    tax_amount = models.BigIntegerField(_('Tax'), default=0)
    discount_amount = models.BigIntegerField(_('Discount'), default=0)
    total_amount = models.BigIntegerField(_('Total'), help_text=_('subtotal + tax - discount'))

    insurance_company = models.CharField(_('Insurance Company'), max_length=255, blank=True, default='')
    insurance_number = models.CharField(_('Insurance Number'), max_length=100, blank=True, default='')
    notes = models.TextField(_('Notes'), blank=True, default='')

    # Explicit terminal flags; everything else is derived
    terminal_status = models.CharField(
        _('Terminal Status'),
        max_length=20,
        choices=TerminalStatusChoices.choices,
        blank=True,
        null=True,
    )
    status_reason = models.TextField(_('Status Reason'), blank=True, default='')
    status_changed_at = models.DateTimeField(_('Status Changed At'), blank=True, null=True)
    status_changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='billing_records_created',
    )
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)
    updated_at = models.DateTimeField(_('Updated At'), auto_now=True)

    objects = BillingRecordQuerySet.as_manager()

    class Meta:
        db_table = 'billing_records'
        ordering = ['-billing_date', 'billing_number']
        verbose_name = _('Billing Record')
        verbose_name_plural = _('Billing Records')
        indexes = [
            models.Index(fields=['-billing_date', 'billing_number'], name='idx_billing_date_number'),
            models.Index(fields=['doctor_ref', 'billing_date'], name='idx_billing_doctor_date'),
            models.Index(fields=['due_date'], name='idx_billing_due_date'),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(total_amount__gte=0), name='billing_total_non_negative'),
            models.CheckConstraint(condition=Q(subtotal_amount__gte=0), name='billing_subtotal_non_negative'),
            models.CheckConstraint(condition=Q(tax_amount__gte=0), name='billing_tax_non_negative'),
            models.CheckConstraint(condition=Q(discount_amount__gte=0), name='billing_discount_non_negative'),
        ]

    def __str__(self):
        return f"Billing {self.billing_number} - {self.status} - {self.total}"

    def save(self, *args, **kwargs):
        if not kwargs.pop('skip_validation', False):
            self.full_clean()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError('Billing records are never deleted; cancel them instead.')

    def clean(self):
        super().clean()

        # INVARIANT: Total consistency
        if None not in (self.subtotal_amount, self.tax_amount, self.discount_amount, self.total_amount):
            expected_total = self.subtotal_amount + self.tax_amount - self.discount_amount
            if self.total_amount != expected_total:
                raise ValidationError({
                    'total_amount': (
                        f'Total mismatch: expected {expected_total} '
                        f'(subtotal {self.subtotal_amount} + tax {self.tax_amount} '
                        f'- discount {self.discount_amount}), but got {self.total_amount}'
                    )
                })

        if self.billing_date and self.due_date and self.due_date < self.billing_date:
            raise ValidationError({'due_date': 'Due date cannot be before billing date'})

    # ------------------------------------------------------------------
    # Derived amounts
    # ------------------------------------------------------------------

    def _money(self, amount):
        return Money(amount, self.currency)

    @property
    def subtotal(self):
        return self._money(self.subtotal_amount)

    @property
    def tax(self):
        return self._money(self.tax_amount)

    @property
    def discount(self):
        return self._money(self.discount_amount)

    @property
    def total(self):
        return self._money(self.total_amount)

    @property
    def paid(self):
        """Sum of the payment log (annotated when loaded via with_balances())."""
        cents = getattr(self, 'paid_cents_annotated', None)
        if cents is None:
            cents = self.payments.aggregate(total=Sum('amount'))['total'] or 0
        return self._money(int(cents))

    @property
    def balance(self):
        """Signed balance; negative means overpaid."""
        return self.total - self.paid

    @property
    def display_balance(self):
        return self.balance.floor_zero()

    @property
    def overpayment(self):
        return (self.paid - self.total).floor_zero()

    @property
    def is_overpaid(self):
        return self.paid > self.total

    def refresh_balances(self):
        """Drop the cached payment sum so the next read hits the payment log."""
        if hasattr(self, 'paid_cents_annotated'):
            del self.paid_cents_annotated
        return self

    # ------------------------------------------------------------------
    # Derived status
    # ------------------------------------------------------------------

    def status_as_of(self, today):
        """Status as a pure function of (terminal flag, balance, due_date, today)."""
        if self.terminal_status:
            return BillingStatusChoices(self.terminal_status)
        if not self.balance.is_positive():
            return BillingStatusChoices.PAID
        if self.due_date < today:
            return BillingStatusChoices.OVERDUE
        return BillingStatusChoices.PENDING

    @property
    def status(self):
        return self.status_as_of(timezone.localdate())

    @property
    def is_closed(self):
        return self.terminal_status in CLOSED_STATUSES


class BillingItem(models.Model):
    """
    Line item of a billing record.

    Business Rules:
    - quantity > 0
    - unit_price >= 0
    - line_total = quantity * unit_price
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    billing = models.ForeignKey(
        BillingRecord,
        on_delete=models.PROTECT,
        related_name='items',
        verbose_name=_('Billing')
    )
    position = models.PositiveIntegerField(_('Position'), default=0)
    item_type = models.CharField(_('Item Type'), max_length=20, choices=ItemTypeChoices.choices)
    item_name = models.CharField(_('Item'), max_length=255)
    quantity = models.PositiveIntegerField(_('Quantity'))
    unit_price = models.BigIntegerField(_('Unit Price'), help_text=_('Minor units, >= 0'))
    line_total = models.BigIntegerField(_('Line Total'), help_text=_('quantity * unit_price'))

    class Meta:
        db_table = 'billing_items'
        ordering = ['billing', 'position']
        verbose_name = _('Billing Item')
        verbose_name_plural = _('Billing Items')
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gt=0), name='billing_item_quantity_positive'),
            models.CheckConstraint(condition=Q(unit_price__gte=0), name='billing_item_unit_price_non_negative'),
            models.CheckConstraint(condition=Q(line_total__gte=0), name='billing_item_total_non_negative'),
        ]

    def __str__(self):
        return f"{self.item_name} x {self.quantity} = {self.line_total}"

    def calculate_line_total(self):
        self.line_total = self.quantity * self.unit_price
        return self.line_total

    @property
    def unit_price_money(self):
        return Money(self.unit_price, self.billing.currency)

    @property
    def line_total_money(self):
        return Money(self.line_total, self.billing.currency)

    def clean(self):
        super().clean()
        if self.quantity is not None and self.quantity <= 0:
            raise ValidationError({'quantity': 'Quantity must be greater than 0'})
        if self.unit_price is not None and self.unit_price < 0:
            raise ValidationError({'unit_price': 'Unit price cannot be negative'})

    def save(self, *args, **kwargs):
        if self.quantity and self.unit_price is not None:
            self.calculate_line_total()
        if not kwargs.pop('skip_validation', False):
            self.full_clean()
        super().save(*args, **kwargs)


class Payment(models.Model):
    """
    Append-only payment log entry.

    Business Rules:
    - kind=payment => amount > 0
    - kind=correction|refund => amount < 0
    - immutable once created; corrections are new negative entries
    - totally ordered per billing record by `sequence`
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    billing = models.ForeignKey(
        BillingRecord,
        on_delete=models.PROTECT,
        related_name='payments',
        verbose_name=_('Billing')
    )
    sequence = models.PositiveIntegerField(_('Sequence'))
    kind = models.CharField(
        _('Kind'),
        max_length=20,
        choices=PaymentKindChoices.choices,
        default=PaymentKindChoices.PAYMENT
    )
    method = models.CharField(_('Method'), max_length=20, choices=PaymentMethodChoices.choices, blank=True, default='')
    amount = models.BigIntegerField(_('Amount'), help_text=_('Minor units'))
    currency = models.CharField(_('Currency'), max_length=3)
    payment_date = models.DateTimeField(_('Payment Date'))

    transaction_id = models.CharField(_('Transaction ID'), max_length=128, blank=True, default='')
    bank_name = models.CharField(_('Bank'), max_length=128, blank=True, default='')
    account_number = models.CharField(_('Account Number'), max_length=64, blank=True, default='')
    check_number = models.CharField(_('Check Number'), max_length=64, blank=True, default='')
    notes = models.TextField(_('Notes'), blank=True, default='')

    caused_overpayment = models.BooleanField(
        _('Caused Overpayment'),
        default=False,
        help_text=_('Paid amount exceeded the billing total after this entry')
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='billing_payments_created',
    )
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)

    class Meta:
        db_table = 'billing_payments'
        ordering = ['billing', 'sequence']
        verbose_name = _('Payment')
        verbose_name_plural = _('Payments')
        indexes = [
            models.Index(fields=['payment_date'], name='idx_payment_date'),
        ]
        constraints = [
            models.UniqueConstraint(fields=['billing', 'sequence'], name='uniq_payment_billing_sequence'),
            models.CheckConstraint(
                condition=(
                    Q(kind=PaymentKindChoices.PAYMENT, amount__gt=0)
                    | Q(kind__in=[PaymentKindChoices.CORRECTION, PaymentKindChoices.REFUND], amount__lt=0)
                ),
                name='payment_amount_sign_matches_kind'
            ),
        ]

    def __str__(self):
        return f"{self.get_kind_display()} #{self.sequence} on {self.billing_id}: {self.money}"

    @property
    def money(self):
        return Money(self.amount, self.currency)

    def clean(self):
        super().clean()
        if self.kind == PaymentKindChoices.PAYMENT and self.amount is not None and self.amount <= 0:
            raise ValidationError({'amount': 'Payment amount must be greater than 0'})
        if self.kind != PaymentKindChoices.PAYMENT and self.amount is not None and self.amount >= 0:
            raise ValidationError({'amount': 'Correction and refund amounts must be negative'})

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Payments are immutable; record a correction instead.')
        if not kwargs.pop('skip_validation', False):
            self.full_clean()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError('Payments are never deleted; record a correction instead.')


class PhysicianPayout(models.Model):
    """
    Physician payout for a period, net of the facility fee.

    Business Rules:
    - pending -> paid exactly once; immutable once paid
    - net_payout = gross_revenue - facility_fee, never negative when persisted
    - each contributing billing record is linked for traceability
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    payout_number = models.CharField(_('Payout Number'), max_length=32, unique=True, editable=False)
    doctor_ref = models.CharField(_('Doctor'), max_length=64, db_index=True)
    period_start = models.DateField(_('Period Start'))
    period_end = models.DateField(_('Period End'))

    currency = models.CharField(_('Currency'), max_length=3)
    gross_revenue = models.BigIntegerField(_('Gross Revenue'))
    facility_fee = models.BigIntegerField(_('Facility Fee'))
    net_payout = models.BigIntegerField(_('Net Payout'))
    consultation_count = models.PositiveIntegerField(_('Consultations'), default=0)
    procedure_count = models.PositiveIntegerField(_('Procedures'), default=0)
    fee_policy = models.JSONField(_('Fee Policy'), default=dict, help_text=_('Facility fee policy applied'))

    status = models.CharField(
        _('Status'),
        max_length=20,
        choices=PayoutStatusChoices.choices,
        default=PayoutStatusChoices.PENDING
    )
    payout_date = models.DateField(_('Payout Date'), blank=True, null=True)

    billings = models.ManyToManyField(
        BillingRecord,
        related_name='payouts',
        blank=True,
        verbose_name=_('Contributing billing records')
    )

    calculated_at = models.DateTimeField(_('Calculated At'), default=timezone.now)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='payouts_created',
    )
    paid_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='payouts_paid',
    )
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)
    updated_at = models.DateTimeField(_('Updated At'), auto_now=True)

    class Meta:
        db_table = 'physician_payouts'
        ordering = ['-period_start', 'payout_number']
        verbose_name = _('Physician Payout')
        verbose_name_plural = _('Physician Payouts')
        indexes = [
            models.Index(fields=['doctor_ref', 'period_start', 'period_end'], name='idx_payout_doctor_period'),
        ]
        constraints = [
            models.UniqueConstraint(fields=['doctor_ref', 'period_start', 'period_end'], name='uniq_payout_doctor_period'),
            models.CheckConstraint(condition=Q(period_end__gte=models.F('period_start')), name='payout_period_ordered'),
            models.CheckConstraint(condition=Q(gross_revenue__gte=0), name='payout_gross_non_negative'),
            models.CheckConstraint(condition=Q(net_payout__gte=0), name='payout_net_non_negative'),
        ]

    def __str__(self):
        return f"Payout {self.payout_number} - {self.doctor_ref} - {self.period_start}..{self.period_end}"

    @property
    def is_paid(self):
        return self.status == PayoutStatusChoices.PAID

    @property
    def gross(self):
        return Money(self.gross_revenue, self.currency)

    @property
    def fee(self):
        return Money(self.facility_fee, self.currency)

    @property
    def net(self):
        return Money(self.net_payout, self.currency)

    def overlaps(self, start, end):
        return self.period_start <= end and start <= self.period_end


class AuditActionChoices(models.TextChoices):
    BILLING_CREATED = 'billing_created', _('Billing created')
    PAYMENT_RECORDED = 'payment_recorded', _('Payment recorded')
    CORRECTION_RECORDED = 'correction_recorded', _('Correction recorded')
    BILLING_CANCELLED = 'billing_cancelled', _('Billing cancelled')
    BILLING_DISPUTED = 'billing_disputed', _('Billing disputed')
    BILLING_REFUNDED = 'billing_refunded', _('Billing refunded')
    PAYOUT_CALCULATED = 'payout_calculated', _('Payout calculated')
    PAYOUT_PAID = 'payout_paid', _('Payout paid')


class AuditEntityTypeChoices(models.TextChoices):
    BILLING_RECORD = 'BillingRecord', _('Billing record')
    PAYMENT = 'Payment', _('Payment')
    PHYSICIAN_PAYOUT = 'PhysicianPayout', _('Physician payout')


class LedgerAuditEntry(models.Model):
    """
    Append-only audit trail of ledger writes.

    Tracks who did what and when; metadata is sanitized before storage.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)

    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='ledger_audit_entries',
        help_text='User who performed the action (null for system actions)'
    )
    action = models.CharField(max_length=32, choices=AuditActionChoices.choices)
    entity_type = models.CharField(max_length=32, choices=AuditEntityTypeChoices.choices)
    entity_id = models.UUIDField()

    billing = models.ForeignKey(
        BillingRecord,
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='audit_entries',
    )
    payout = models.ForeignKey(
        PhysicianPayout,
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='audit_entries',
    )
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = 'billing_audit_entries'
        ordering = ['created_at']
        verbose_name = _('Ledger Audit Entry')
        verbose_name_plural = _('Ledger Audit Entries')
        indexes = [
            models.Index(fields=['entity_type', 'entity_id'], name='idx_ledger_audit_entity'),
        ]

    def __str__(self):
        return f"{self.action} {self.entity_type}:{self.entity_id} by {self.actor_id or 'system'}"


class DocumentSequence(models.Model):
    """Per-prefix, per-year counter for human-readable document numbers."""
    prefix = models.CharField(max_length=8)
    year = models.PositiveIntegerField()
    last_value = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'billing_document_sequences'
        constraints = [
            models.UniqueConstraint(fields=['prefix', 'year'], name='uniq_document_sequence_prefix_year'),
        ]

    def __str__(self):
        return f"{self.prefix}-{self.year}: {self.last_value}"


class DoctorPayoutLock(models.Model):
    """
    One row per doctor. Locking it serializes payout calculation, payout
    settlement and billing creation for that doctor.
    """
    doctor_ref = models.CharField(_('Doctor'), max_length=64, unique=True)

    class Meta:
        db_table = 'billing_doctor_payout_locks'

    def __str__(self):
        return self.doctor_ref
