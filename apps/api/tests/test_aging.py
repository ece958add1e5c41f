"""
Receivable aging tests.

Test coverage:
1. Bucket boundaries (current, 30, 60, 90, 120+)
2. Selection: positive balance, not cancelled/refunded
3. Ordering: oldest bucket, largest outstanding, billing number
4. Per-bucket summary
"""
from datetime import timedelta

import pytest

from apps.billing import services
from apps.billing.aging import (
    aging_bucket,
    build_aging_report,
    days_overdue,
    summarize_aging,
)
from apps.billing.money import Money


class TestBucketBoundaries:

    @pytest.mark.parametrize('days,bucket', [
        (0, 'current'),
        (1, '30'),
        (30, '30'),
        (31, '60'),
        (60, '60'),
        (61, '90'),
        (90, '90'),
        (91, '120+'),
        (400, '120+'),
    ])
    def test_bucket_for_days_overdue(self, days, bucket):
        assert aging_bucket(days) == bucket

    def test_negative_days_rejected(self):
        with pytest.raises(ValueError):
            aging_bucket(-1)

    def test_days_overdue_never_negative(self, today):
        assert days_overdue(today + timedelta(days=10), today) == 0
        assert days_overdue(today - timedelta(days=10), today) == 10


@pytest.mark.django_db
class TestAgingReport:

    def test_overdue_billing_lands_in_its_bucket(self, make_billing, today):
        """200.00 due 45 days ago with nothing paid."""
        billing = make_billing(20000, due_date=today - timedelta(days=45))

        rows = build_aging_report(today)

        assert len(rows) == 1
        row = rows[0]
        assert row['billing_id'] == billing.id
        assert row['days_overdue'] == 45
        assert row['aging_bucket'] == '60'
        assert row['outstanding_amount'] == Money(20000, 'BRL')
        assert row['original_amount'] == Money(20000, 'BRL')
        assert row['status'] == 'overdue'

    def test_partial_payment_reduces_outstanding(self, make_billing, today):
        billing = make_billing(20000, due_date=today - timedelta(days=5))
        services.add_payment(billing.id, 7500, 'cash')

        [row] = build_aging_report(today)

        assert row['outstanding_amount'] == Money(12500, 'BRL')
        assert row['original_amount'] == Money(20000, 'BRL')

    def test_future_due_date_is_current(self, make_billing, today):
        make_billing(1000, due_date=today + timedelta(days=15))

        [row] = build_aging_report(today)

        assert row['aging_bucket'] == 'current'
        assert row['days_overdue'] == 0
        assert row['status'] == 'pending'

    def test_settled_billing_is_excluded(self, make_billing, today):
        billing = make_billing(1000, due_date=today - timedelta(days=100))
        services.add_payment(billing.id, 1000, 'cash')

        assert build_aging_report(today) == []

    def test_overpaid_billing_is_excluded(self, make_billing, today):
        billing = make_billing(1000, due_date=today - timedelta(days=100))
        services.add_payment(billing.id, 1500, 'cash')

        assert build_aging_report(today) == []

    def test_cancelled_billing_is_excluded(self, make_billing, today):
        billing = make_billing(1000, due_date=today - timedelta(days=100))
        services.cancel_billing(billing.id, reason='Written off by management')

        assert build_aging_report(today) == []

    def test_disputed_billing_with_balance_is_included(self, make_billing, today):
        billing = make_billing(1000, due_date=today - timedelta(days=10))
        services.dispute_billing(billing.id, reason='Insurer glosa')

        [row] = build_aging_report(today)

        assert row['billing_id'] == billing.id
        assert row['status'] == 'disputed'

    def test_report_is_relative_to_as_of(self, make_billing, today):
        make_billing(1000, due_date=today)

        [row_today] = build_aging_report(today)
        [row_later] = build_aging_report(today + timedelta(days=95))

        assert row_today['aging_bucket'] == 'current'
        assert row_later['aging_bucket'] == '120+'
        assert row_later['days_overdue'] == 95

    def test_ordering(self, make_billing, today):
        recent_small = make_billing(1000, due_date=today - timedelta(days=10))
        recent_large = make_billing(9000, due_date=today - timedelta(days=20))
        oldest = make_billing(500, due_date=today - timedelta(days=200))
        current = make_billing(50000, due_date=today + timedelta(days=5))
        recent_large_twin = make_billing(9000, due_date=today - timedelta(days=25))

        rows = build_aging_report(today)

        assert [row['billing_id'] for row in rows] == [
            oldest.id,
            recent_large.id,
            recent_large_twin.id,
            recent_small.id,
            current.id,
        ]


@pytest.mark.django_db
class TestAgingSummary:

    def test_bucket_totals(self, make_billing, today):
        make_billing(20000, due_date=today - timedelta(days=45))
        make_billing(5000, due_date=today - timedelta(days=50))
        make_billing(3000, due_date=today - timedelta(days=150))
        make_billing(1000, due_date=today + timedelta(days=10))

        summary = summarize_aging(build_aging_report(today))

        assert summary['buckets']['60'] == {'amount': Money(25000, 'BRL'), 'count': 2}
        assert summary['buckets']['120+'] == {'amount': Money(3000, 'BRL'), 'count': 1}
        assert summary['buckets']['current'] == {'amount': Money(1000, 'BRL'), 'count': 1}
        assert summary['buckets']['30']['count'] == 0
        assert summary['total_outstanding'] == Money(29000, 'BRL')
        assert summary['total_overdue'] == Money(28000, 'BRL')
        assert summary['record_count'] == 4

    def test_empty_report(self):
        summary = summarize_aging([], 'BRL')

        assert summary['total_outstanding'] == Money.zero('BRL')
        assert summary['record_count'] == 0
        assert list(summary['buckets']) == ['current', '30', '60', '90', '120+']
