"""
Billing service layer - billing records and the payment ledger.

- Billing record creation with server-side totals
- Append-only payment log (payments, corrections, refunds)
- Explicit status commands (cancel, dispute, refund)
- Per-record serialization of every money write
"""
import time
from datetime import date, datetime
from typing import List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Max
from django.utils import timezone

from apps.core.observability import metrics, get_sanitized_logger
from apps.core.observability.events import (
    log_billing_created,
    log_billing_transition,
    log_consistency_checkpoint,
    log_overpayment,
    log_payment_recorded,
)
from apps.core.observability.tracing import add_span_attribute, trace_span

from .audit import acting_user, record_audit
from .exceptions import (
    ClosedBillingError,
    ConflictError,
    InvalidAmountError,
    LedgerError,
    NotFoundError,
    OverpaymentError,
    RangeError,
    ValidationError,
)
from .models import (
    AuditActionChoices,
    BillingItem,
    BillingRecord,
    BillingStatusChoices,
    BillingTypeChoices,
    ItemTypeChoices,
    Payment,
    PaymentKindChoices,
    PaymentMethodChoices,
    PayoutStatusChoices,
    PhysicianPayout,
    TerminalStatusChoices,
)
from .money import Money, default_currency
from .sequences import BILLING_PREFIX, lock_doctor_payouts, next_number

logger = get_sanitized_logger(__name__)

CORRECTION_NOTE = 'correction'

# Billing types that are settled by a payer other than the patient
INSURED_BILLING_TYPES = (BillingTypeChoices.TISS, BillingTypeChoices.INSURANCE)


class PaymentResult:
    """Outcome of a recorded payment: the entry, the refreshed record and an optional soft warning."""

    def __init__(self, payment, billing, warning=None):
        self.payment = payment
        self.billing = billing
        self.warning = warning

    @property
    def has_warning(self):
        return self.warning is not None

    def __repr__(self):
        return f'PaymentResult(payment={self.payment.id}, warning={self.warning!r})'


# ============================================================================
# Helpers
# ============================================================================

def to_minor_units(value, field: str, currency: str) -> int:
    """
    Accept an int of minor units (or Money in the ledger currency).

    Floats and bools are rejected: no float ever represents money.
    """
    if isinstance(value, Money):
        if value.currency != currency:
            raise ValidationError(
                f'{field} is in {value.currency} but the ledger runs in {currency}',
                field=field,
            )
        return value.amount
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f'{field} must be an integer amount in minor units',
            field=field,
        )
    return value


def _as_datetime(value):
    if value is None:
        return timezone.now()
    if isinstance(value, datetime):
        return value if timezone.is_aware(value) else timezone.make_aware(value)
    if isinstance(value, date):
        return timezone.make_aware(datetime.combine(value, datetime.min.time()))
    raise ValidationError('payment_date must be a date or datetime', field='payment_date')


def save_model(instance, **kwargs):
    """Save a model, turning Django validation failures into ledger ValidationErrors."""
    try:
        instance.save(**kwargs)
    except DjangoValidationError as e:
        fields = e.message_dict if hasattr(e, 'error_dict') else {}
        raise ValidationError('; '.join(e.messages), fields=fields)


def _require_reason(reason):
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('A reason is required', field='reason')
    return reason


def _lock_billing(billing_id) -> BillingRecord:
    """Lock the billing record row until the caller's transaction commits."""
    try:
        return BillingRecord.objects.select_for_update().get(pk=billing_id)
    except (BillingRecord.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError(f'Billing record {billing_id} not found', billing_id=str(billing_id))


def _append_entry(billing, kind, amount, user=None, payment_date=None, **details) -> Payment:
    """
    Append one entry to the billing record's payment log.

    Must run under the billing record lock: the sequence and the overpayment
    snapshot are computed from the log as it stands.
    """
    paid_before = billing.refresh_balances().paid
    last_sequence = billing.payments.aggregate(last=Max('sequence'))['last'] or 0

    payment = Payment(
        billing=billing,
        sequence=last_sequence + 1,
        kind=kind,
        amount=amount,
        currency=billing.currency,
        payment_date=_as_datetime(payment_date),
        caused_overpayment=(
            kind == PaymentKindChoices.PAYMENT
            and paid_before.amount + amount > billing.total_amount
        ),
        created_by=acting_user(user),
        **details
    )
    save_model(payment)
    add_span_attribute('ledger.entry_sequence', payment.sequence)
    add_span_attribute('ledger.caused_overpayment', payment.caused_overpayment)
    billing.refresh_balances()
    return payment


# ============================================================================
# Billing records
# ============================================================================

def _validate_items(items, currency):
    if not items:
        raise ValidationError('A billing record needs at least one line item', field='items')

    lines = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f'Line item {index} must be an object', field='items')

        item_type = item.get('item_type')
        if item_type not in ItemTypeChoices.values:
            raise ValidationError(f'Line item {index}: unknown item type {item_type!r}', field='items')

        item_name = (item.get('item_name') or '').strip()
        if not item_name:
            raise ValidationError(f'Line item {index}: item_name is required', field='items')

        quantity = item.get('quantity', 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f'Line item {index}: quantity must be a positive integer', field='items')

        unit_price = to_minor_units(item.get('unit_price'), 'unit_price', currency)
        if unit_price < 0:
            raise ValidationError(f'Line item {index}: unit price cannot be negative', field='items')

        lines.append({
            'item_type': item_type,
            'item_name': item_name,
            'quantity': quantity,
            'unit_price': unit_price,
            'line_total': quantity * unit_price,
        })
    return lines


def _ensure_outside_paid_payouts(doctor_ref, billing_date):
    """Revenue dated inside a settled payout period would never reach any payout."""
    lock_doctor_payouts(doctor_ref)
    paid = (
        PhysicianPayout.objects
        .filter(
            doctor_ref=doctor_ref,
            status=PayoutStatusChoices.PAID,
            period_start__lte=billing_date,
            period_end__gte=billing_date,
        )
        .first()
    )
    if paid is not None:
        raise ConflictError(
            f'Billing date {billing_date} falls inside payout {paid.payout_number} '
            f'({paid.period_start}..{paid.period_end}), which is already paid',
            field='billing_date',
            payout_number=paid.payout_number,
        )


def create_billing(
    patient_ref,
    doctor_ref,
    billing_type,
    items,
    due_date,
    discount_amount=0,
    tax_amount=0,
    insurance_company=None,
    insurance_number=None,
    billing_date=None,
    notes='',
    created_by=None,
) -> BillingRecord:
    """
    Create a billing record with its line items.

    The total is computed server side: sum(line totals) + tax - discount.

    Raises:
        ValidationError: empty items, negative prices/tax/discount, non-positive
            quantities, unknown types, negative total, due date before billing
            date, or an insured billing type without an insurance company
        ConflictError: billing date inside a paid payout period of the doctor
    """
    start_time = time.time()
    currency = default_currency()
    billing_date = billing_date or timezone.localdate()
    type_label = billing_type if billing_type in BillingTypeChoices.values else 'invalid'

    with trace_span('billing.create', attributes={'billing_type': type_label}):
        try:
            if not patient_ref or not doctor_ref:
                raise ValidationError('patient_ref and doctor_ref are required')
            if billing_type not in BillingTypeChoices.values:
                raise ValidationError(f'Unknown billing type {billing_type!r}', field='billing_type')
            if due_date is None:
                raise ValidationError('due_date is required', field='due_date')
            if due_date < billing_date:
                raise ValidationError('Due date cannot be before billing date', field='due_date')
            if billing_type in INSURED_BILLING_TYPES and not insurance_company:
                raise ValidationError(
                    f'Billing type {billing_type} requires an insurance company',
                    field='insurance_company',
                )

            lines = _validate_items(items, currency)
            tax = to_minor_units(tax_amount, 'tax_amount', currency)
            discount = to_minor_units(discount_amount, 'discount_amount', currency)
            if tax < 0 or discount < 0:
                raise ValidationError('Tax and discount cannot be negative')

            subtotal = sum(line['line_total'] for line in lines)
            total = subtotal + tax - discount
            if total < 0:
                raise ValidationError(
                    f'Discount exceeds subtotal plus tax (total would be {total})',
                    field='discount_amount',
                )

            with transaction.atomic():
                _ensure_outside_paid_payouts(doctor_ref, billing_date)
                billing = BillingRecord(
                    billing_number=next_number(BILLING_PREFIX, billing_date.year),
                    patient_ref=patient_ref,
                    doctor_ref=doctor_ref,
                    billing_type=billing_type,
                    billing_date=billing_date,
                    due_date=due_date,
                    currency=currency,
                    subtotal_amount=subtotal,
                    tax_amount=tax,
                    discount_amount=discount,
                    total_amount=total,
                    insurance_company=insurance_company or '',
                    insurance_number=insurance_number or '',
                    notes=notes or '',
                    created_by=acting_user(created_by),
                )
                save_model(billing)

                for position, line in enumerate(lines, start=1):
                    save_model(BillingItem(billing=billing, position=position, **line))

                record_audit(
                    AuditActionChoices.BILLING_CREATED,
                    billing,
                    user=created_by,
                    billing=billing,
                    billing_number=billing.billing_number,
                    total_amount=total,
                    item_count=len(lines),
                )
        except LedgerError as e:
            metrics.billing_created_total.labels(billing_type=type_label, result=e.error_type).inc()
            logger.warning(
                'Billing creation rejected',
                extra={'billing_type': type_label, 'error_type': e.error_type, 'error': e.message}
            )
            raise

    duration_ms = int((time.time() - start_time) * 1000)
    metrics.billing_created_total.labels(billing_type=billing_type, result='success').inc()
    log_billing_created(billing, duration_ms=duration_ms)
    return billing


def get_billing(billing_id) -> BillingRecord:
    try:
        return (
            BillingRecord.objects.with_balances()
            .prefetch_related('items')
            .get(pk=billing_id)
        )
    except (BillingRecord.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError(f'Billing record {billing_id} not found', billing_id=str(billing_id))


def list_billings(
    date_from=None,
    date_to=None,
    billing_type=None,
    status=None,
    doctor_ref=None,
    patient_ref=None,
    today=None,
) -> List[BillingRecord]:
    """
    List billing records, newest billing date first, ties by billing number.

    Date bounds are inclusive on billing_date. The status filter applies to the
    derived status as of `today`.
    """
    if date_from and date_to and date_from > date_to:
        raise RangeError(date_from, date_to)
    if billing_type and billing_type not in BillingTypeChoices.values:
        raise ValidationError(f'Unknown billing type {billing_type!r}', field='billing_type')
    if status and status not in BillingStatusChoices.values:
        raise ValidationError(f'Unknown status {status!r}', field='status')

    today = today or timezone.localdate()
    queryset = BillingRecord.objects.with_balances().prefetch_related('items')

    if date_from:
        queryset = queryset.filter(billing_date__gte=date_from)
    if date_to:
        queryset = queryset.filter(billing_date__lte=date_to)
    if billing_type:
        queryset = queryset.filter(billing_type=billing_type)
    if doctor_ref:
        queryset = queryset.filter(doctor_ref=doctor_ref)
    if patient_ref:
        queryset = queryset.filter(patient_ref=patient_ref)

    queryset = queryset.order_by('-billing_date', 'billing_number')

    if not status:
        return list(queryset)
    if status in TerminalStatusChoices.values:
        return list(queryset.filter(terminal_status=status))

    # pending/paid/overdue only exist on read
    return [
        billing for billing in queryset.filter(terminal_status__isnull=True)
        if billing.status_as_of(today) == status
    ]


# ============================================================================
# Status commands
# ============================================================================

def _set_terminal_status(billing, status, reason, user):
    billing.terminal_status = status
    billing.status_reason = reason
    billing.status_changed_at = timezone.now()
    billing.status_changed_by = acting_user(user)
    save_model(billing, update_fields=[
        'terminal_status', 'status_reason', 'status_changed_at', 'status_changed_by', 'updated_at',
    ])


def _run_status_command(billing_id, to_status, allowed_from, reason, user, action, before_close=None):
    """
    Apply an explicit status command under the billing record lock.

    IDEMPOTENT: a record already in `to_status` is returned unchanged.

    `before_close(billing, from_status)` may append ledger entries and returns
    extra audit metadata; it runs inside the same transaction.
    """
    today = timezone.localdate()

    with trace_span(f'billing.{to_status}', attributes={'billing_id': str(billing_id)}):
        try:
            reason = _require_reason(reason)
            with transaction.atomic():
                billing = _lock_billing(billing_id)
                from_status = billing.status_as_of(today)

                if from_status == to_status:
                    metrics.billing_transition_total.labels(to_status=to_status, result='idempotent').inc()
                    logger.info(
                        f'Billing already {to_status} - no-op',
                        extra={'billing_id': str(billing.id), 'billing_number': billing.billing_number}
                    )
                    return billing.refresh_balances()

                if from_status not in allowed_from:
                    raise ConflictError(
                        f'Cannot move billing {billing.billing_number} from {from_status} to {to_status}',
                        billing_number=billing.billing_number,
                        current_status=str(from_status),
                    )

                extra = before_close(billing, from_status) if before_close else {}
                _set_terminal_status(billing, to_status, reason, user)
                record_audit(
                    action,
                    billing,
                    user=user,
                    billing=billing,
                    from_status=str(from_status),
                    to_status=str(to_status),
                    reason=reason,
                    **extra
                )
        except LedgerError as e:
            metrics.billing_transition_total.labels(to_status=to_status, result=e.error_type).inc()
            logger.warning(
                f'Billing {to_status} rejected',
                extra={'billing_id': str(billing_id), 'error_type': e.error_type, 'error': e.message}
            )
            raise

    metrics.billing_transition_total.labels(to_status=to_status, result='success').inc()
    log_billing_transition(billing, str(from_status), str(to_status), **extra)
    return billing.refresh_balances()


def cancel_billing(billing_id, reason, user=None) -> BillingRecord:
    """
    Cancel a pending or overdue billing record that has no money applied.

    Money already received must first be netted to zero with corrections or
    refund entries; otherwise open a dispute instead.

    Raises:
        ConflictError: status is not pending/overdue, or paid amount is not zero
    """
    def ensure_no_money_applied(billing, from_status):
        if not billing.paid.is_zero():
            raise ConflictError(
                f'Billing {billing.billing_number} has {billing.paid} applied; '
                f'use dispute_billing or net the payments to zero first',
                billing_number=billing.billing_number,
                current_status=str(from_status),
            )
        return {}

    return _run_status_command(
        billing_id,
        BillingStatusChoices.CANCELLED,
        (BillingStatusChoices.PENDING, BillingStatusChoices.OVERDUE),
        reason,
        user,
        AuditActionChoices.BILLING_CANCELLED,
        before_close=ensure_no_money_applied,
    )


def dispute_billing(billing_id, reason, user=None) -> BillingRecord:
    """Flag a billing record as disputed. Payments can still be applied."""
    return _run_status_command(
        billing_id,
        BillingStatusChoices.DISPUTED,
        (BillingStatusChoices.PENDING, BillingStatusChoices.OVERDUE, BillingStatusChoices.PAID),
        reason,
        user,
        AuditActionChoices.BILLING_DISPUTED,
    )


def refund_billing(billing_id, reason, method, user=None, payment_date=None) -> BillingRecord:
    """
    Refund a paid billing record in full and close it.

    Appends one refund entry of -paid_amount to the payment log, so the
    paid amount of a refunded record is zero.
    """
    if method not in PaymentMethodChoices.values:
        metrics.billing_transition_total.labels(
            to_status=BillingStatusChoices.REFUNDED, result='validation_error'
        ).inc()
        raise ValidationError(f'Unknown payment method {method!r}', field='method')

    def append_refund_entry(billing, from_status):
        paid = billing.paid
        if paid.is_zero():
            return {'refunded_amount': 0}

        refund = _append_entry(
            billing,
            PaymentKindChoices.REFUND,
            -paid.amount,
            user=user,
            payment_date=payment_date,
            method=method,
            notes=reason,
        )
        record_audit(
            AuditActionChoices.PAYMENT_RECORDED,
            refund,
            user=user,
            billing=billing,
            kind=refund.kind,
            amount=refund.amount,
            sequence=refund.sequence,
        )
        metrics.billing_payments_total.labels(kind=refund.kind, result='success').inc()
        log_payment_recorded(refund, billing)
        return {'refunded_amount': paid.amount}

    return _run_status_command(
        billing_id,
        BillingStatusChoices.REFUNDED,
        (BillingStatusChoices.PAID,),
        reason,
        user,
        AuditActionChoices.BILLING_REFUNDED,
        before_close=append_refund_entry,
    )


# ============================================================================
# Payment ledger
# ============================================================================

def add_payment(
    billing_id,
    amount,
    method,
    payment_date=None,
    transaction_id=None,
    bank_name=None,
    account_number=None,
    check_number=None,
    notes='',
    user=None,
) -> PaymentResult:
    """
    Record a payment against a billing record.

    TRANSACTION: the billing record row is locked before the balance is read,
    so concurrent payments on the same record are serialized.

    Returns:
        PaymentResult; `warning` is an OverpaymentError when the paid amount
        now exceeds the total. The payment is recorded regardless.

    Raises:
        InvalidAmountError: amount <= 0 (use add_correction for negatives)
        ValidationError: unknown method or non-integer amount
        ClosedBillingError: record is cancelled or refunded
        NotFoundError: unknown billing record
    """
    currency = default_currency()

    with trace_span('billing.add_payment', attributes={'billing_id': str(billing_id), 'method': str(method)}):
        try:
            amount = to_minor_units(amount, 'amount', currency)
            if amount <= 0:
                raise InvalidAmountError(
                    'Payment amount must be greater than 0; use a correction to reverse money',
                    amount=amount,
                )
            if method not in PaymentMethodChoices.values:
                raise ValidationError(f'Unknown payment method {method!r}', field='method')

            write_started = time.time()
            with transaction.atomic():
                billing = _lock_billing(billing_id)
                if billing.is_closed:
                    raise ClosedBillingError(
                        f'Billing {billing.billing_number} is {billing.terminal_status}; no payment can be applied',
                        billing_number=billing.billing_number,
                        current_status=billing.terminal_status,
                    )

                payment = _append_entry(
                    billing,
                    PaymentKindChoices.PAYMENT,
                    amount,
                    user=user,
                    payment_date=payment_date,
                    method=method,
                    transaction_id=transaction_id or '',
                    bank_name=bank_name or '',
                    account_number=account_number or '',
                    check_number=check_number or '',
                    notes=notes or '',
                )
                record_audit(
                    AuditActionChoices.PAYMENT_RECORDED,
                    payment,
                    user=user,
                    billing=billing,
                    kind=payment.kind,
                    method=method,
                    amount=amount,
                    sequence=payment.sequence,
                )
            metrics.billing_payment_write_duration_seconds.observe(time.time() - write_started)
        except LedgerError as e:
            metrics.billing_payments_total.labels(kind=PaymentKindChoices.PAYMENT, result=e.error_type).inc()
            logger.warning(
                'Payment rejected',
                extra={'billing_id': str(billing_id), 'error_type': e.error_type, 'error': e.message}
            )
            raise

    metrics.billing_payments_total.labels(kind=PaymentKindChoices.PAYMENT, result='success').inc()
    log_payment_recorded(payment, billing, duration_ms=int((time.time() - write_started) * 1000))

    warning = None
    if billing.is_overpaid:
        warning = OverpaymentError(billing.billing_number, billing.overpayment)
        metrics.billing_overpayments_total.inc()
        log_overpayment(billing, payment, billing.overpayment)

    reconcile_billing(billing)
    return PaymentResult(payment, billing, warning)


def add_correction(billing_id, amount, reason, user=None, payment_date=None) -> Payment:
    """
    Reverse money on a billing record with a negative correction entry.

    Raises:
        InvalidAmountError: amount >= 0
        ValidationError: the correction would drive the paid amount below zero
        ClosedBillingError: record is cancelled or refunded
    """
    currency = default_currency()

    with trace_span('billing.add_correction', attributes={'billing_id': str(billing_id)}):
        try:
            amount = to_minor_units(amount, 'amount', currency)
            if amount >= 0:
                raise InvalidAmountError('Correction amount must be negative', amount=amount)
            reason = _require_reason(reason)

            with transaction.atomic():
                billing = _lock_billing(billing_id)
                if billing.is_closed:
                    raise ClosedBillingError(
                        f'Billing {billing.billing_number} is {billing.terminal_status}; no correction can be applied',
                        billing_number=billing.billing_number,
                        current_status=billing.terminal_status,
                    )

                paid = billing.paid
                if paid.amount + amount < 0:
                    raise ValidationError(
                        f'Correction of {Money(amount, currency)} exceeds the paid amount {paid}',
                        field='amount',
                    )

                correction = _append_entry(
                    billing,
                    PaymentKindChoices.CORRECTION,
                    amount,
                    user=user,
                    payment_date=payment_date,
                    notes=CORRECTION_NOTE,
                )
                record_audit(
                    AuditActionChoices.CORRECTION_RECORDED,
                    correction,
                    user=user,
                    billing=billing,
                    amount=amount,
                    sequence=correction.sequence,
                    reason=reason,
                )
        except LedgerError as e:
            metrics.billing_payments_total.labels(kind=PaymentKindChoices.CORRECTION, result=e.error_type).inc()
            logger.warning(
                'Correction rejected',
                extra={'billing_id': str(billing_id), 'error_type': e.error_type, 'error': e.message}
            )
            raise

    metrics.billing_payments_total.labels(kind=PaymentKindChoices.CORRECTION, result='success').inc()
    log_payment_recorded(correction, billing)
    reconcile_billing(billing)
    return correction


def list_payments(billing_id) -> List[Payment]:
    """Payment log of a billing record in insertion order."""
    billing = get_billing(billing_id)
    return list(billing.payments.order_by('sequence'))


def reconcile_billing(billing: BillingRecord, checkpoint: Optional[str] = None) -> dict:
    """
    Re-derive a billing record's amounts from its items and payment log.

    Returns the individual checks; a failed check is logged as a consistency
    checkpoint failure.
    """
    billing.refresh_balances()
    items = list(billing.items.all())
    entries = list(billing.payments.order_by('sequence'))
    entries_total = sum(entry.amount for entry in entries)

    checks = {
        'subtotal_matches_items': billing.subtotal_amount == sum(item.line_total for item in items),
        'total_matches_components': billing.total_amount == (
            billing.subtotal_amount + billing.tax_amount - billing.discount_amount
        ),
        'balance_matches_payment_log': billing.balance.amount == billing.total_amount - entries_total,
        'sequence_contiguous': [entry.sequence for entry in entries] == list(range(1, len(entries) + 1)),
        'entry_signs_valid': all(
            (entry.amount > 0) == (entry.kind == PaymentKindChoices.PAYMENT) for entry in entries
        ),
    }

    log_consistency_checkpoint(
        checkpoint or 'billing_reconciliation',
        entity_ids={'billing_id': str(billing.id), 'billing_number': billing.billing_number},
        checks_passed=checks,
        paid_amount=billing.paid.amount,
        total_amount=billing.total_amount,
    )
    return checks
