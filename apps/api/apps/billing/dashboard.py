"""
Revenue dashboard aggregator.

Pure composition over the ledger and the aging engine; nothing is stored.
"""
import calendar
import time
from contextlib import contextmanager
from datetime import date
from typing import List, Optional

from django.conf import settings
from django.db.models import Sum
from django.db.models.functions import TruncMonth
from django.utils import timezone

from apps.core.observability import metrics, get_sanitized_logger
from apps.core.observability.tracing import trace_span

from .aging import build_aging_report, summarize_aging
from .collaborators import ExpenseLedgerClient
from .exceptions import DependencyError, LedgerError, RangeError, ValidationError
from .models import BillingRecord, BillingStatusChoices, Payment
from .money import Money, default_currency

logger = get_sanitized_logger(__name__)

# Each chart month costs one expense ledger read
MAX_CHART_MONTHS = 24


def _revenue_records(date_from, date_to):
    """Billed revenue: every record dated in range except cancelled ones."""
    return (
        BillingRecord.objects
        .filter(billing_date__gte=date_from, billing_date__lte=date_to)
        .exclude(terminal_status=BillingStatusChoices.CANCELLED)
    )


def _total_revenue(date_from, date_to, currency) -> Money:
    cents = (
        _revenue_records(date_from, date_to)
        .aggregate(total=Sum('total_amount'))['total']
    )
    return Money(int(cents or 0), currency)


def _total_payments(date_from, date_to, currency) -> Money:
    """Net cash movement in the range: payments minus corrections and refunds."""
    cents = (
        Payment.objects
        .filter(payment_date__date__gte=date_from, payment_date__date__lte=date_to)
        .aggregate(total=Sum('amount'))['total']
    )
    return Money(int(cents or 0), currency)


def _total_expenses(client, date_from, date_to) -> Money:
    """
    Read expenses, retrying once after a backoff.

    Only this read-only aggregation retries; write paths never do.
    """
    try:
        return client.total_expenses(date_from, date_to)
    except DependencyError as e:
        backoff = getattr(settings, 'BILLING_DEPENDENCY_RETRY_BACKOFF_SECONDS', 0.5)
        logger.warning(
            'Expense ledger read failed, retrying once',
            extra={'dependency': e.dependency, 'backoff_seconds': backoff}
        )
        time.sleep(backoff)
        return client.total_expenses(date_from, date_to)


@contextmanager
def _expense_ledger(expense_client=None):
    """Yield the caller's client, or a configured one that is closed afterwards."""
    if expense_client is not None:
        yield expense_client
        return
    with ExpenseLedgerClient() as client:
        yield client


def get_dashboard(
    date_from: date,
    date_to: date,
    as_of: Optional[date] = None,
    expense_client=None,
) -> dict:
    """
    Financial summary for a billing date range.

    - total_revenue: billing totals in range, cancelled records excluded
    - total_payments: payment log sum for entries dated in range
    - outstanding/overdue receivables: aging snapshot as of `as_of`
    - net_profit: total_revenue - total_expenses

    Raises:
        RangeError: date_from after date_to
        DependencyError: expense ledger still failing after one retry
    """
    if date_from > date_to:
        metrics.billing_dashboard_total.labels(result='range_error').inc()
        raise RangeError(date_from, date_to)

    start_time = time.time()
    currency = default_currency()
    as_of = as_of or timezone.localdate()

    with trace_span('billing.dashboard', attributes={
        'date_from': date_from.isoformat(),
        'date_to': date_to.isoformat(),
    }):
        try:
            total_revenue = _total_revenue(date_from, date_to, currency)
            total_payments = _total_payments(date_from, date_to, currency)
            aging = summarize_aging(build_aging_report(as_of), currency)
            with _expense_ledger(expense_client) as client:
                total_expenses = _total_expenses(client, date_from, date_to)
        except LedgerError as e:
            metrics.billing_dashboard_total.labels(result=e.error_type).inc()
            raise

    metrics.billing_dashboard_total.labels(result='success').inc()
    logger.info(
        'Dashboard computed',
        extra={
            'date_from': date_from.isoformat(),
            'date_to': date_to.isoformat(),
            'duration_ms': int((time.time() - start_time) * 1000),
        }
    )

    return {
        'date_from': date_from,
        'date_to': date_to,
        'as_of': as_of,
        'total_revenue': total_revenue,
        'total_payments': total_payments,
        'outstanding_receivables': aging['total_outstanding'],
        'overdue_receivables': aging['total_overdue'],
        'total_expenses': total_expenses,
        'net_profit': total_revenue - total_expenses,
    }


def _chart_months(date_from, date_to) -> List[tuple]:
    """Calendar months touching the range, each clipped to it: [(month_start, start, end)]."""
    months = []
    month_start = date_from.replace(day=1)
    while month_start <= date_to:
        last_day = calendar.monthrange(month_start.year, month_start.month)[1]
        month_end = month_start.replace(day=last_day)
        months.append((month_start, max(month_start, date_from), min(month_end, date_to)))
        if month_start.month == 12:
            month_start = month_start.replace(year=month_start.year + 1, month=1)
        else:
            month_start = month_start.replace(month=month_start.month + 1)
    return months


def get_revenue_expense_chart(date_from: date, date_to: date, expense_client=None) -> dict:
    """
    Month-by-month revenue against expenses for a billing date range.

    Revenue follows the dashboard rule (cancelled records excluded). Expenses
    are read per month from the expense ledger, each read retried once. The
    first and last months are clipped to the range.

    Raises:
        RangeError: date_from after date_to
        ValidationError: range spans more than MAX_CHART_MONTHS months
        DependencyError: expense ledger still failing after one retry
    """
    if date_from > date_to:
        metrics.billing_revenue_chart_total.labels(result='range_error').inc()
        raise RangeError(date_from, date_to)

    months = _chart_months(date_from, date_to)
    if len(months) > MAX_CHART_MONTHS:
        metrics.billing_revenue_chart_total.labels(result='validation_error').inc()
        raise ValidationError(
            f'Chart range spans {len(months)} months; at most {MAX_CHART_MONTHS} are allowed',
            field='date_to',
        )

    currency = default_currency()

    with trace_span('billing.revenue_expense_chart', attributes={
        'date_from': date_from.isoformat(),
        'date_to': date_to.isoformat(),
        'months': len(months),
    }):
        try:
            revenue_by_month = {
                row['month']: int(row['total'] or 0)
                for row in (
                    _revenue_records(date_from, date_to)
                    .annotate(month=TruncMonth('billing_date'))
                    .values('month')
                    .annotate(total=Sum('total_amount'))
                )
            }

            monthly_data = []
            with _expense_ledger(expense_client) as client:
                for month_start, start, end in months:
                    revenue = Money(revenue_by_month.get(month_start, 0), currency)
                    expenses = _total_expenses(client, start, end)
                    monthly_data.append({
                        'month': month_start.strftime('%Y-%m'),
                        'period_start': start,
                        'period_end': end,
                        'revenue': revenue,
                        'expenses': expenses,
                        'net_profit': revenue - expenses,
                    })
        except LedgerError as e:
            metrics.billing_revenue_chart_total.labels(result=e.error_type).inc()
            raise

    metrics.billing_revenue_chart_total.labels(result='success').inc()

    total_revenue = Money.sum((row['revenue'] for row in monthly_data), currency)
    total_expenses = Money.sum((row['expenses'] for row in monthly_data), currency)
    return {
        'date_from': date_from,
        'date_to': date_to,
        'monthly_data': monthly_data,
        'total_revenue': total_revenue,
        'total_expenses': total_expenses,
        'net_profit': total_revenue - total_expenses,
    }
