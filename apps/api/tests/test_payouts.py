"""
Physician payout tests.

Test coverage:
1. Gross, facility fee and net per period
2. Recalculation in place (same number, same amounts)
3. Paid payouts are never recalculated or re-paid
4. Overlapping periods and negative net payouts are refused
5. Fee policies (percentage rounding, flat, settings default)
6. Per-doctor serialization and settled periods closed to new billings
"""
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from apps.billing import payouts, services
from apps.billing.exceptions import (
    AlreadyPaidError,
    ConflictError,
    NotFoundError,
    PayoutError,
    RangeError,
    ValidationError,
)
from apps.billing.models import (
    AuditActionChoices,
    BillingRecord,
    DoctorPayoutLock,
    LedgerAuditEntry,
    PhysicianPayout,
)
from apps.billing.money import Money
from apps.billing.payouts import (
    FlatFeePolicy,
    PercentageFeePolicy,
    build_fee_policy,
    calculate_payout,
    mark_payout_paid,
)
from apps.billing.sequences import lock_doctor_payouts

PERIOD_START = date(2026, 9, 1)
PERIOD_END = date(2026, 9, 30)

FLAT_2000 = {'type': 'flat', 'amount': 2000}


@pytest.fixture
def september_billings(make_billing, billing_line):
    """Two billings for DOC-1 in September: 100.00 + 150.00."""
    return [
        make_billing(
            doctor_ref='DOC-1',
            billing_date=date(2026, 9, 5),
            items=[billing_line(10000)],
        ),
        make_billing(
            doctor_ref='DOC-1',
            billing_date=date(2026, 9, 20),
            items=[billing_line(5000), billing_line(5000, item_type='procedure', quantity=2)],
        ),
    ]


# ============================================================================
# Calculation
# ============================================================================

@pytest.mark.django_db
class TestCalculatePayout:

    def test_flat_fee_payout(self, september_billings, finance_user):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000, user=finance_user)

        assert payout.gross == Money(25000, 'BRL')
        assert payout.fee == Money(2000, 'BRL')
        assert payout.net == Money(23000, 'BRL')
        assert payout.status == 'pending'
        assert payout.fee_policy == FLAT_2000
        assert payout.payout_number == 'PAY-2026-000001'

    def test_contributing_billings_are_linked(self, september_billings):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert set(payout.billings.values_list('id', flat=True)) == {b.id for b in september_billings}

    def test_consultation_and_procedure_counts(self, september_billings):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert payout.consultation_count == 2
        assert payout.procedure_count == 2

    def test_other_doctors_and_dates_do_not_contribute(self, september_billings, make_billing):
        make_billing(99000, doctor_ref='DOC-2', billing_date=date(2026, 9, 10))
        make_billing(99000, doctor_ref='DOC-1', billing_date=date(2026, 10, 1))
        make_billing(99000, doctor_ref='DOC-1', billing_date=date(2026, 8, 31))

        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert payout.gross == Money(25000, 'BRL')

    def test_period_bounds_are_inclusive(self, make_billing):
        make_billing(1000, doctor_ref='DOC-1', billing_date=PERIOD_START)
        make_billing(2000, doctor_ref='DOC-1', billing_date=PERIOD_END)

        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert payout.gross == Money(3000, 'BRL')

    def test_cancelled_and_refunded_billings_are_excluded(self, september_billings, make_billing):
        cancelled = make_billing(7000, doctor_ref='DOC-1', billing_date=date(2026, 9, 12))
        services.cancel_billing(cancelled.id, reason='Duplicate')
        refunded = make_billing(8000, doctor_ref='DOC-1', billing_date=date(2026, 9, 13))
        services.add_payment(refunded.id, 8000, 'pix')
        services.refund_billing(refunded.id, reason='Procedure aborted', method='pix')

        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert payout.gross == Money(25000, 'BRL')

    def test_unpaid_billings_count_towards_gross(self, september_billings):
        """Payouts are on billed revenue, not on collected cash."""
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert all(b.paid.is_zero() for b in september_billings)
        assert payout.gross == Money(25000, 'BRL')

    def test_empty_period_with_zero_fee(self):
        payout = calculate_payout('DOC-9', PERIOD_START, PERIOD_END, fee_policy={'type': 'percentage', 'rate': '20'})

        assert payout.gross == Money.zero('BRL')
        assert payout.net == Money.zero('BRL')

    def test_default_fee_policy_from_settings(self, september_billings, settings):
        settings.BILLING_DEFAULT_FACILITY_FEE_POLICY = {'type': 'percentage', 'rate': '30'}

        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END)

        assert payout.fee == Money(7500, 'BRL')
        assert payout.fee_policy == {'type': 'percentage', 'rate': '30'}

    def test_calculation_is_audited(self, september_billings, finance_user):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000, user=finance_user)

        entry = LedgerAuditEntry.objects.get(payout=payout)
        assert entry.action == AuditActionChoices.PAYOUT_CALCULATED
        assert entry.metadata['net_payout'] == 23000
        assert entry.metadata['billing_count'] == 2


@pytest.mark.django_db
class TestRecalculation:

    def test_recalculation_is_deterministic(self, september_billings):
        first = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)
        second = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert second.id == first.id
        assert second.payout_number == first.payout_number
        assert (second.gross_revenue, second.facility_fee, second.net_payout) == (25000, 2000, 23000)
        assert PhysicianPayout.objects.count() == 1

    def test_recalculation_picks_up_new_billings(self, september_billings, make_billing):
        first = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)
        make_billing(5000, doctor_ref='DOC-1', billing_date=date(2026, 9, 28))

        second = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert second.payout_number == first.payout_number
        assert second.gross == Money(30000, 'BRL')
        assert second.billings.count() == 3

    def test_paid_payout_is_never_recalculated(self, september_billings):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)
        mark_payout_paid(payout.id)

        with pytest.raises(AlreadyPaidError) as exc_info:
            calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert exc_info.value.payout_number == payout.payout_number

    def test_paid_payout_blocks_overlapping_period(self, september_billings):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)
        mark_payout_paid(payout.id)

        with pytest.raises(AlreadyPaidError):
            calculate_payout('DOC-1', date(2026, 9, 15), date(2026, 10, 15), fee_policy=FLAT_2000)

    def test_pending_overlapping_period_conflicts(self, september_billings):
        calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        with pytest.raises(ConflictError):
            calculate_payout('DOC-1', date(2026, 9, 15), date(2026, 10, 15), fee_policy=FLAT_2000)

        assert PhysicianPayout.objects.count() == 1

    def test_adjacent_periods_do_not_conflict(self, september_billings):
        calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        october = calculate_payout('DOC-1', date(2026, 10, 1), date(2026, 10, 31), fee_policy={'type': 'flat', 'amount': 0})

        assert october.payout_number == 'PAY-2026-000002'

    def test_other_doctor_same_period(self, september_billings):
        calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        other = calculate_payout('DOC-2', PERIOD_START, PERIOD_END, fee_policy={'type': 'flat', 'amount': 0})

        assert other.doctor_ref == 'DOC-2'


@pytest.mark.django_db
class TestPayoutRejections:

    def test_negative_net_payout_is_refused(self, make_billing):
        make_billing(1000, doctor_ref='DOC-1', billing_date=date(2026, 9, 5))

        with pytest.raises(PayoutError) as exc_info:
            calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert exc_info.value.reason == 'negative_net_payout'
        assert exc_info.value.context['net_payout'] == -1000
        assert PhysicianPayout.objects.count() == 0

    def test_inverted_period_raises_range_error(self):
        with pytest.raises(RangeError):
            calculate_payout('DOC-1', PERIOD_END, PERIOD_START)

    def test_doctor_is_required(self):
        with pytest.raises(ValidationError):
            calculate_payout('', PERIOD_START, PERIOD_END)

    def test_unknown_fee_policy_type(self):
        with pytest.raises(ValidationError):
            calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy={'type': 'tiered'})


# ============================================================================
# Mark paid
# ============================================================================

@pytest.mark.django_db
class TestMarkPayoutPaid:

    def test_mark_paid(self, september_billings, finance_user):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        paid = mark_payout_paid(payout.id, payment_date=date(2026, 10, 5), user=finance_user)

        assert paid.is_paid
        assert paid.payout_date == date(2026, 10, 5)
        assert paid.paid_by == finance_user
        assert LedgerAuditEntry.objects.filter(payout=payout, action=AuditActionChoices.PAYOUT_PAID).count() == 1

    def test_payment_date_defaults_to_today(self, september_billings, today):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        assert mark_payout_paid(payout.id).payout_date == today

    def test_mark_paid_twice_is_refused(self, september_billings):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)
        mark_payout_paid(payout.id, payment_date=date(2026, 10, 5))

        with pytest.raises(AlreadyPaidError):
            mark_payout_paid(payout.id, payment_date=date(2026, 10, 6))

        assert PhysicianPayout.objects.get(pk=payout.id).payout_date == date(2026, 10, 5)

    def test_unknown_payout(self):
        with pytest.raises(NotFoundError):
            mark_payout_paid('00000000-0000-0000-0000-000000000000')


@pytest.mark.django_db
class TestListPayouts:

    def test_filters(self, september_billings):
        september = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)
        october = calculate_payout('DOC-1', date(2026, 10, 1), date(2026, 10, 31), fee_policy={'type': 'flat', 'amount': 0})
        other = calculate_payout('DOC-2', PERIOD_START, PERIOD_END, fee_policy={'type': 'flat', 'amount': 0})
        mark_payout_paid(september.id)

        assert [p.id for p in payouts.list_payouts(doctor_ref='DOC-1')] == [october.id, september.id]
        assert [p.id for p in payouts.list_payouts(is_paid=True)] == [september.id]
        assert {p.id for p in payouts.list_payouts(is_paid=False)} == {october.id, other.id}

    def test_get_unknown_payout(self):
        with pytest.raises(NotFoundError):
            payouts.get_payout('nope')


# ============================================================================
# Fee policies
# ============================================================================

class TestFeePolicies:

    def test_percentage_rounds_half_up(self):
        """12.5% of 1.01 is 12.625 cents -> 13 cents."""
        policy = PercentageFeePolicy('12.5')
        assert policy.apply(Money(101, 'BRL')) == Money(13, 'BRL')

    def test_percentage_exact_half(self):
        """10% of 0.05 is 0.5 cents -> 1 cent."""
        assert PercentageFeePolicy(10).apply(Money(5, 'BRL')) == Money(1, 'BRL')

    def test_percentage_rejects_float_rate(self):
        with pytest.raises(ValidationError):
            PercentageFeePolicy(12.5)

    def test_percentage_rejects_negative_rate(self):
        with pytest.raises(ValidationError):
            PercentageFeePolicy('-1')

    def test_percentage_rejects_garbage(self):
        with pytest.raises(ValidationError):
            PercentageFeePolicy('twenty')

    def test_flat_fee_ignores_gross(self):
        assert FlatFeePolicy(2000).apply(Money(100, 'BRL')) == Money(2000, 'BRL')

    def test_flat_fee_rejects_negative(self):
        with pytest.raises(ValidationError):
            FlatFeePolicy(-1)

    def test_build_from_description(self):
        assert build_fee_policy({'type': 'percentage', 'rate': '20'}) == PercentageFeePolicy(Decimal('20'))
        assert build_fee_policy({'type': 'flat', 'amount': 2000}) == FlatFeePolicy(2000)

    def test_build_passes_policies_through(self):
        policy = FlatFeePolicy(500)
        assert build_fee_policy(policy) is policy

    def test_describe_round_trips(self):
        policy = PercentageFeePolicy('12.5')
        assert build_fee_policy(policy.describe()) == policy


@pytest.mark.django_db
def test_percentage_fee_over_gross_is_a_payout_error(make_billing):
    make_billing(1000, doctor_ref='DOC-1', billing_date=date(2026, 9, 5))

    with pytest.raises(PayoutError):
        calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy={'type': 'percentage', 'rate': '150'})


@pytest.mark.django_db
def test_billing_after_paid_period_goes_to_next_payout(make_billing):
    make_billing(1000, doctor_ref='DOC-1', billing_date=date(2026, 9, 5))
    september = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy={'type': 'flat', 'amount': 0})
    mark_payout_paid(september.id)
    make_billing(4000, doctor_ref='DOC-1', billing_date=date(2026, 10, 2))

    october = calculate_payout(
        'DOC-1', PERIOD_END + timedelta(days=1), date(2026, 10, 31), fee_policy={'type': 'flat', 'amount': 0}
    )

    assert october.gross == Money(4000, 'BRL')


# ============================================================================
# Settled periods and per-doctor serialization
# ============================================================================

@pytest.mark.django_db
class TestSettledPeriods:

    @pytest.fixture
    def paid_september(self, make_billing):
        make_billing(1000, doctor_ref='DOC-1', billing_date=date(2026, 9, 5))
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy={'type': 'flat', 'amount': 0})
        return mark_payout_paid(payout.id)

    def test_billing_dated_in_paid_period_is_refused(self, paid_september, make_billing):
        with pytest.raises(ConflictError) as exc_info:
            make_billing(4000, doctor_ref='DOC-1', billing_date=date(2026, 9, 20))

        assert exc_info.value.context['payout_number'] == paid_september.payout_number
        assert not BillingRecord.objects.filter(billing_date=date(2026, 9, 20)).exists()

    def test_refused_billing_does_not_consume_a_number(self, paid_september, make_billing):
        with pytest.raises(ConflictError):
            make_billing(4000, doctor_ref='DOC-1', billing_date=date(2026, 9, 20))

        assert make_billing(4000, doctor_ref='DOC-1', billing_date=date(2026, 10, 2)).billing_number == 'BIL-2026-000002'

    def test_paid_period_boundaries_are_closed(self, paid_september, make_billing):
        for billing_date in (PERIOD_START, PERIOD_END):
            with pytest.raises(ConflictError):
                make_billing(4000, doctor_ref='DOC-1', billing_date=billing_date)

    def test_other_doctors_may_bill_in_the_period(self, paid_september, make_billing):
        billing = make_billing(4000, doctor_ref='DOC-2', billing_date=date(2026, 9, 20))

        assert billing.doctor_ref == 'DOC-2'

    def test_pending_payout_period_stays_open(self, make_billing):
        make_billing(1000, doctor_ref='DOC-1', billing_date=date(2026, 9, 5))
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy={'type': 'flat', 'amount': 0})

        make_billing(4000, doctor_ref='DOC-1', billing_date=date(2026, 9, 20))

        recalculated = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy={'type': 'flat', 'amount': 0})
        assert recalculated.id == payout.id
        assert recalculated.gross == Money(5000, 'BRL')

    def test_mark_paid_refuses_overlap_with_paid_payout(self, paid_september):
        # Left behind by writers that raced before the doctor lock existed
        overlapping = PhysicianPayout.objects.create(
            payout_number='PAY-2026-000099',
            doctor_ref='DOC-1',
            period_start=date(2026, 9, 15),
            period_end=date(2026, 10, 15),
            currency='BRL',
            gross_revenue=0,
            facility_fee=0,
            net_payout=0,
        )

        with pytest.raises(AlreadyPaidError) as exc_info:
            mark_payout_paid(overlapping.id)

        assert exc_info.value.payout_number == paid_september.payout_number
        assert not PhysicianPayout.objects.get(pk=overlapping.id).is_paid


@pytest.mark.django_db
class TestDoctorPayoutLock:

    def test_calculation_locks_the_doctor_first(self, september_billings):
        with patch('apps.billing.payouts.lock_doctor_payouts', wraps=lock_doctor_payouts) as lock:
            calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        lock.assert_called_once_with('DOC-1')

    def test_mark_paid_locks_the_doctor(self, september_billings):
        payout = calculate_payout('DOC-1', PERIOD_START, PERIOD_END, fee_policy=FLAT_2000)

        with patch('apps.billing.payouts.lock_doctor_payouts', wraps=lock_doctor_payouts) as lock:
            mark_payout_paid(payout.id)

        lock.assert_called_once_with('DOC-1')

    def test_billing_creation_locks_the_doctor(self, make_billing):
        with patch('apps.billing.services.lock_doctor_payouts', wraps=lock_doctor_payouts) as lock:
            make_billing(1000, doctor_ref='DOC-7')

        lock.assert_called_once_with('DOC-7')

    def test_one_lock_row_per_doctor(self):
        first = lock_doctor_payouts('DOC-1')
        second = lock_doctor_payouts('DOC-1')
        lock_doctor_payouts('DOC-2')

        assert first.pk == second.pk
        assert DoctorPayoutLock.objects.count() == 2
