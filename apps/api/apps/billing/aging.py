"""
Receivable aging engine.

Accounts receivable are not stored: every report re-derives one row per open
billing record from its balance and due date as of a given day.
"""
from datetime import date
from typing import Dict, List, Optional

from django.utils import timezone

from apps.core.observability import metrics, get_sanitized_logger
from apps.core.observability.tracing import trace_span

from .models import BillingRecord
from .money import Money, default_currency

logger = get_sanitized_logger(__name__)

BUCKET_CURRENT = 'current'

# (bucket, inclusive upper bound of days overdue), youngest first
AGING_BUCKETS = (
    (BUCKET_CURRENT, 0),
    ('30', 30),
    ('60', 60),
    ('90', 90),
    ('120+', None),
)

BUCKET_ORDER = {name: index for index, (name, _) in enumerate(AGING_BUCKETS)}


def days_overdue(due_date: date, today: date) -> int:
    """Whole days past the due date; never negative."""
    return max(0, (today - due_date).days)


def aging_bucket(days: int) -> str:
    if days < 0:
        raise ValueError('days overdue cannot be negative')
    for name, upper_bound in AGING_BUCKETS:
        if upper_bound is None or days <= upper_bound:
            return name


def _receivable_row(billing: BillingRecord, as_of: date) -> dict:
    days = days_overdue(billing.due_date, as_of)
    return {
        'billing_id': billing.id,
        'billing_number': billing.billing_number,
        'patient_ref': billing.patient_ref,
        'doctor_ref': billing.doctor_ref,
        'billing_date': billing.billing_date,
        'due_date': billing.due_date,
        'original_amount': billing.total,
        'outstanding_amount': billing.balance,
        'days_overdue': days,
        'aging_bucket': aging_bucket(days),
        'status': str(billing.status_as_of(as_of)),
    }


@metrics.track_duration(metrics.billing_aging_report_duration_seconds)
def build_aging_report(as_of: Optional[date] = None) -> List[dict]:
    """
    Accounts receivable rows as of `as_of` (default: today).

    Selection: positive balance and not cancelled/refunded. Balance is the
    authoritative signal; a paid record never appears however stale its
    stored state is.

    Ordering: oldest bucket first, then largest outstanding amount, then
    billing number.
    """
    as_of = as_of or timezone.localdate()

    with trace_span('billing.aging_report', attributes={'as_of': as_of.isoformat()}):
        candidates = BillingRecord.objects.with_balances().not_closed().order_by('billing_number')
        rows = [
            _receivable_row(billing, as_of)
            for billing in candidates
            if billing.balance.is_positive()
        ]

    rows.sort(key=lambda row: (
        -BUCKET_ORDER[row['aging_bucket']],
        -row['outstanding_amount'].amount,
        row['billing_number'],
    ))

    logger.info(
        'Aging report generated',
        extra={'as_of': as_of.isoformat(), 'row_count': len(rows)}
    )
    return rows


def summarize_aging(rows: List[dict], currency: Optional[str] = None) -> Dict[str, object]:
    """
    Per-bucket totals of an aging report.

    Returns:
        {
            'buckets': {bucket: {'amount': Money, 'count': int}, ...},
            'total_outstanding': Money,
            'total_overdue': Money,   # everything outside 'current'
            'record_count': int,
        }
    """
    currency = currency or default_currency()
    buckets = {name: {'amount': Money.zero(currency), 'count': 0} for name, _ in AGING_BUCKETS}

    for row in rows:
        bucket = buckets[row['aging_bucket']]
        bucket['amount'] = bucket['amount'] + row['outstanding_amount']
        bucket['count'] += 1

    total_outstanding = Money.sum((bucket['amount'] for bucket in buckets.values()), currency)
    return {
        'buckets': buckets,
        'total_outstanding': total_outstanding,
        'total_overdue': total_outstanding - buckets[BUCKET_CURRENT]['amount'],
        'record_count': len(rows),
    }
