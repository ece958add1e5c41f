"""
Physician payout calculator.

A payout is the doctor's gross revenue for a period (billing records dated in
the period, excluding cancelled and refunded ones) net of the facility fee.
The facility fee policy is pluggable: clinics charge either a percentage or a
flat amount per period.
"""
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone

from apps.core.observability import metrics, get_sanitized_logger
from apps.core.observability.events import log_consistency_checkpoint, log_payout_event
from apps.core.observability.tracing import trace_span

from .audit import acting_user, record_audit
from .exceptions import (
    AlreadyPaidError,
    ConflictError,
    LedgerError,
    NotFoundError,
    PayoutError,
    RangeError,
    ValidationError,
)
from .models import (
    CLOSED_STATUSES,
    AuditActionChoices,
    BillingRecord,
    ItemTypeChoices,
    PayoutStatusChoices,
    PhysicianPayout,
)
from .money import Money, default_currency
from .sequences import PAYOUT_PREFIX, lock_doctor_payouts, next_number
from .services import save_model

logger = get_sanitized_logger(__name__)

NEGATIVE_NET_PAYOUT = 'negative_net_payout'


# ============================================================================
# Facility fee policies
# ============================================================================

class FeePolicy:
    """Pure function from gross revenue to facility fee."""

    policy_type = None

    def apply(self, gross: Money) -> Money:
        raise NotImplementedError

    def describe(self) -> dict:
        raise NotImplementedError

    def __eq__(self, other):
        return isinstance(other, FeePolicy) and self.describe() == other.describe()

    def __repr__(self):
        return f'{self.__class__.__name__}({self.describe()})'


class PercentageFeePolicy(FeePolicy):
    """Fee is `rate` percent of gross revenue, rounded half-up at the minor unit."""

    policy_type = 'percentage'

    def __init__(self, rate):
        if isinstance(rate, float):
            raise ValidationError('Fee rate must be a decimal string or integer, not float', field='rate')
        try:
            rate = Decimal(str(rate))
        except InvalidOperation:
            raise ValidationError(f'Invalid fee rate {rate!r}', field='rate')
        if not rate.is_finite() or rate < 0:
            raise ValidationError('Fee rate must be a non-negative percentage', field='rate')
        self.rate = rate

    def apply(self, gross: Money) -> Money:
        return gross.percentage(self.rate)

    def describe(self) -> dict:
        return {'type': self.policy_type, 'rate': str(self.rate)}


class FlatFeePolicy(FeePolicy):
    """Fixed fee in minor units per payout period."""

    policy_type = 'flat'

    def __init__(self, amount):
        if isinstance(amount, Money):
            amount = amount.amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError('Flat fee must be a non-negative integer of minor units', field='amount')
        self.amount = amount

    def apply(self, gross: Money) -> Money:
        return Money(self.amount, gross.currency)

    def describe(self) -> dict:
        return {'type': self.policy_type, 'amount': self.amount}


def build_fee_policy(description=None) -> FeePolicy:
    """
    Build a fee policy from its dict description.

    Examples:
        build_fee_policy({'type': 'percentage', 'rate': '20'})
        build_fee_policy({'type': 'flat', 'amount': 2000})

    Without a description the clinic default from
    settings.BILLING_DEFAULT_FACILITY_FEE_POLICY applies.
    """
    if isinstance(description, FeePolicy):
        return description
    if description is None:
        description = getattr(settings, 'BILLING_DEFAULT_FACILITY_FEE_POLICY', {'type': 'percentage', 'rate': '0'})
    if not isinstance(description, dict):
        raise ValidationError('Fee policy must be an object', field='fee_policy')

    policy_type = description.get('type')
    if policy_type == PercentageFeePolicy.policy_type:
        return PercentageFeePolicy(description.get('rate'))
    if policy_type == FlatFeePolicy.policy_type:
        return FlatFeePolicy(description.get('amount'))
    raise ValidationError(f'Unknown fee policy type {policy_type!r}', field='fee_policy')


# ============================================================================
# Payouts
# ============================================================================

def _tally(billings, item_type):
    return sum(
        item.quantity
        for billing in billings
        for item in billing.items.all()
        if item.item_type == item_type
    )


def _contributing_billings(doctor_ref, period_start, period_end) -> List[BillingRecord]:
    return list(
        BillingRecord.objects
        .filter(doctor_ref=doctor_ref, billing_date__gte=period_start, billing_date__lte=period_end)
        .exclude(terminal_status__in=CLOSED_STATUSES)
        .prefetch_related('items')
        .order_by('billing_number')
    )


def _paid_overlap(doctor_ref, period_start, period_end):
    return (
        PhysicianPayout.objects
        .filter(
            doctor_ref=doctor_ref,
            status=PayoutStatusChoices.PAID,
            period_start__lte=period_end,
            period_end__gte=period_start,
        )
        .order_by('period_start', 'payout_number')
        .first()
    )


def calculate_payout(
    doctor_ref: str,
    period_start: date,
    period_end: date,
    fee_policy=None,
    user=None,
) -> PhysicianPayout:
    """
    Calculate (or recalculate) a doctor's payout for a period.

    IDEMPOTENT: recalculating the same exact period updates the pending payout
    in place, keeping its number; same inputs give the same amounts.

    Raises:
        RangeError: period_start after period_end
        AlreadyPaidError: a paid payout of the doctor overlaps the period
        ConflictError: a pending payout of the doctor overlaps with a different period
        PayoutError: net payout would be negative (nothing is persisted)
    """
    if not doctor_ref:
        raise ValidationError('doctor_ref is required', field='doctor_ref')
    if period_start > period_end:
        metrics.billing_payout_total.labels(operation='calculate', result='range_error').inc()
        raise RangeError(period_start, period_end)

    policy = build_fee_policy(fee_policy)
    currency = default_currency()

    with trace_span('billing.calculate_payout', attributes={
        'doctor_ref': doctor_ref,
        'period_start': period_start.isoformat(),
        'period_end': period_end.isoformat(),
        'fee_policy': policy.policy_type,
    }):
        try:
            with transaction.atomic():
                lock_doctor_payouts(doctor_ref)
                overlapping = list(
                    PhysicianPayout.objects.select_for_update()
                    .filter(doctor_ref=doctor_ref, period_start__lte=period_end, period_end__gte=period_start)
                    .order_by('period_start', 'payout_number')
                )

                for existing in overlapping:
                    if existing.is_paid:
                        raise AlreadyPaidError(
                            existing.payout_number,
                            f'Payout {existing.payout_number} for {existing.period_start}..{existing.period_end} '
                            f'is already paid and overlaps the requested period',
                        )

                payout = None
                for existing in overlapping:
                    if existing.period_start == period_start and existing.period_end == period_end:
                        payout = existing
                    else:
                        raise ConflictError(
                            f'Pending payout {existing.payout_number} covers '
                            f'{existing.period_start}..{existing.period_end}; '
                            f'overlapping periods would count billing records twice',
                            payout_number=existing.payout_number,
                        )

                billings = _contributing_billings(doctor_ref, period_start, period_end)
                gross = Money.sum((billing.total for billing in billings), currency)
                fee = policy.apply(gross)
                net = gross - fee

                if net.is_negative():
                    raise PayoutError(
                        NEGATIVE_NET_PAYOUT,
                        f'Facility fee {fee} exceeds gross revenue {gross}; review the fee policy',
                        gross_revenue=gross.amount,
                        facility_fee=fee.amount,
                        net_payout=net.amount,
                    )

                recalculated = payout is not None
                if payout is None:
                    payout = PhysicianPayout(
                        payout_number=next_number(PAYOUT_PREFIX, period_start.year),
                        doctor_ref=doctor_ref,
                        period_start=period_start,
                        period_end=period_end,
                        created_by=acting_user(user),
                    )

                payout.currency = currency
                payout.gross_revenue = gross.amount
                payout.facility_fee = fee.amount
                payout.net_payout = net.amount
                payout.consultation_count = _tally(billings, ItemTypeChoices.CONSULTATION)
                payout.procedure_count = _tally(billings, ItemTypeChoices.PROCEDURE)
                payout.fee_policy = policy.describe()
                payout.calculated_at = timezone.now()

                try:
                    payout.full_clean()
                except DjangoValidationError as e:
                    raise ValidationError('; '.join(e.messages))
                payout.save()
                payout.billings.set(billings)

                record_audit(
                    AuditActionChoices.PAYOUT_CALCULATED,
                    payout,
                    user=user,
                    payout=payout,
                    gross_revenue=gross.amount,
                    facility_fee=fee.amount,
                    net_payout=net.amount,
                    billing_count=len(billings),
                    fee_policy=policy.describe(),
                    recalculated=recalculated,
                )
        except LedgerError as e:
            metrics.billing_payout_total.labels(operation='calculate', result=e.error_type).inc()
            logger.warning(
                'Payout calculation rejected',
                extra={'doctor_ref': doctor_ref, 'error_type': e.error_type, 'error': e.message}
            )
            raise

    metrics.billing_payout_total.labels(
        operation='calculate', result='recalculated' if recalculated else 'success'
    ).inc()
    log_payout_event(
        'payout.calculated',
        payout,
        gross_revenue=payout.gross_revenue,
        facility_fee=payout.facility_fee,
        net_payout=payout.net_payout,
        billing_count=len(billings),
        recalculated=recalculated,
    )
    log_consistency_checkpoint(
        'payout_calculation',
        entity_ids={'payout_id': str(payout.id), 'payout_number': payout.payout_number},
        checks_passed={
            'net_matches_gross_minus_fee': payout.net_payout == payout.gross_revenue - payout.facility_fee,
            'gross_matches_billings': payout.gross_revenue == sum(b.total_amount for b in billings),
            'net_non_negative': payout.net_payout >= 0,
        },
    )
    return payout


def get_payout(payout_id) -> PhysicianPayout:
    try:
        return PhysicianPayout.objects.get(pk=payout_id)
    except (PhysicianPayout.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError(f'Payout {payout_id} not found', payout_id=str(payout_id))


def list_payouts(doctor_ref: Optional[str] = None, is_paid: Optional[bool] = None) -> List[PhysicianPayout]:
    queryset = PhysicianPayout.objects.all()
    if doctor_ref:
        queryset = queryset.filter(doctor_ref=doctor_ref)
    if is_paid is not None:
        queryset = queryset.filter(
            status=PayoutStatusChoices.PAID if is_paid else PayoutStatusChoices.PENDING
        )
    return list(queryset.order_by('-period_start', 'payout_number'))


def mark_payout_paid(payout_id, payment_date: Optional[date] = None, user=None) -> PhysicianPayout:
    """
    Mark a pending payout as paid. Happens exactly once.

    Raises:
        AlreadyPaidError: the payout was already marked paid
        AlreadyPaidError: another paid payout of the doctor overlaps its period
        NotFoundError: unknown payout
    """
    with trace_span('billing.mark_payout_paid', attributes={'payout_id': str(payout_id)}):
        try:
            with transaction.atomic():
                # Doctor row before payout row, the same order calculate_payout takes them
                lock_doctor_payouts(get_payout(payout_id).doctor_ref)
                payout = PhysicianPayout.objects.select_for_update().get(pk=payout_id)

                if payout.is_paid:
                    raise AlreadyPaidError(payout.payout_number)

                paid_overlap = _paid_overlap(payout.doctor_ref, payout.period_start, payout.period_end)
                if paid_overlap is not None:
                    raise AlreadyPaidError(
                        paid_overlap.payout_number,
                        f'Payout {paid_overlap.payout_number} for {paid_overlap.period_start}..{paid_overlap.period_end} '
                        f'is already paid and overlaps payout {payout.payout_number}',
                    )

                payout.status = PayoutStatusChoices.PAID
                payout.payout_date = payment_date or timezone.localdate()
                payout.paid_by = acting_user(user)
                save_model(payout, update_fields=['status', 'payout_date', 'paid_by', 'updated_at'])

                record_audit(
                    AuditActionChoices.PAYOUT_PAID,
                    payout,
                    user=user,
                    payout=payout,
                    payout_date=payout.payout_date.isoformat(),
                    net_payout=payout.net_payout,
                )
        except LedgerError as e:
            metrics.billing_payout_total.labels(operation='mark_paid', result=e.error_type).inc()
            logger.warning(
                'Mark payout paid rejected',
                extra={'payout_id': str(payout_id), 'error_type': e.error_type, 'error': e.message}
            )
            raise

    metrics.billing_payout_total.labels(operation='mark_paid', result='success').inc()
    log_payout_event('payout.paid', payout, payout_date=payout.payout_date.isoformat())
    return payout
