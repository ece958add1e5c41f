"""
Revenue dashboard and expense ledger client tests.

Test coverage:
1. Revenue matches the billing list (cancelled excluded)
2. Payments are the net of the log dated in range
3. Receivables come from the aging engine
4. Expense ledger: one retry, then DependencyError
5. ExpenseLedgerClient transport and payload failures
6. Monthly revenue vs expense chart
7. Expense client connections are released
"""
from datetime import date, timedelta
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from apps.billing import services
from apps.billing.collaborators import ExpenseLedgerClient
from apps.billing.dashboard import MAX_CHART_MONTHS, get_dashboard, get_revenue_expense_chart
from apps.billing.exceptions import DependencyError, RangeError, ValidationError
from apps.billing.models import BillingStatusChoices
from apps.billing.money import Money


def expense_client(*results):
    """Expense client stub answering `results` in order (exceptions are raised)."""
    client = Mock()
    client.total_expenses.side_effect = list(results)
    return client


@pytest.mark.django_db
class TestDashboardTotals:

    def test_revenue_matches_billing_list(self, make_billing, today):
        start = today - timedelta(days=30)
        make_billing(10000, billing_date=today - timedelta(days=20))
        make_billing(25000, billing_date=today - timedelta(days=5))
        cancelled = make_billing(7000, billing_date=today - timedelta(days=3))
        services.cancel_billing(cancelled.id, reason='Duplicate')
        make_billing(99000, billing_date=today - timedelta(days=60))

        summary = get_dashboard(start, today, expense_client=expense_client(Money.zero('BRL')))

        listed = services.list_billings(date_from=start, date_to=today)
        expected = sum(b.total_amount for b in listed if b.status != BillingStatusChoices.CANCELLED)
        assert summary['total_revenue'] == Money(expected, 'BRL')
        assert summary['total_revenue'] == Money(35000, 'BRL')

    def test_disputed_and_refunded_billings_count_as_revenue(self, make_billing, today):
        disputed = make_billing(10000)
        services.dispute_billing(disputed.id, reason='Contested')
        refunded = make_billing(5000)
        services.add_payment(refunded.id, 5000, 'cash')
        services.refund_billing(refunded.id, reason='Complaint', method='cash')

        summary = get_dashboard(today, today, expense_client=expense_client(Money.zero('BRL')))

        assert summary['total_revenue'] == Money(15000, 'BRL')

    def test_payments_are_net_of_corrections_in_range(self, make_billing, today):
        billing = make_billing(20000)
        services.add_payment(billing.id, 15000, 'cash', payment_date=today)
        services.add_correction(billing.id, -2000, reason='Wrong amount keyed', payment_date=today)
        services.add_payment(billing.id, 5000, 'pix', payment_date=today - timedelta(days=40))

        summary = get_dashboard(
            today - timedelta(days=7), today, expense_client=expense_client(Money.zero('BRL'))
        )

        assert summary['total_payments'] == Money(13000, 'BRL')

    def test_receivables_come_from_aging(self, make_billing, today):
        make_billing(20000, due_date=today - timedelta(days=45))
        make_billing(3000, due_date=today + timedelta(days=5))

        summary = get_dashboard(today, today, as_of=today, expense_client=expense_client(Money.zero('BRL')))

        assert summary['outstanding_receivables'] == Money(23000, 'BRL')
        assert summary['overdue_receivables'] == Money(20000, 'BRL')
        assert summary['as_of'] == today

    def test_net_profit_is_revenue_minus_expenses(self, make_billing, today):
        make_billing(50000)

        summary = get_dashboard(today, today, expense_client=expense_client(Money(12000, 'BRL')))

        assert summary['total_expenses'] == Money(12000, 'BRL')
        assert summary['net_profit'] == Money(38000, 'BRL')

    def test_net_profit_can_be_negative(self, make_billing, today):
        make_billing(1000)

        summary = get_dashboard(today, today, expense_client=expense_client(Money(5000, 'BRL')))

        assert summary['net_profit'] == Money(-4000, 'BRL')

    def test_expense_ledger_reads_the_requested_range(self, today):
        client = expense_client(Money.zero('BRL'))

        get_dashboard(today - timedelta(days=7), today, expense_client=client)

        client.total_expenses.assert_called_once_with(today - timedelta(days=7), today)

    def test_no_expense_ledger_configured_means_zero_expenses(self, make_billing, today):
        make_billing(1000)

        summary = get_dashboard(today, today)

        assert summary['total_expenses'] == Money.zero('BRL')
        assert summary['net_profit'] == Money(1000, 'BRL')

    def test_inverted_range(self, today):
        with pytest.raises(RangeError):
            get_dashboard(today, today - timedelta(days=1))

    def test_empty_ledger(self, today):
        summary = get_dashboard(today, today, expense_client=expense_client(Money.zero('BRL')))

        assert summary['total_revenue'] == Money.zero('BRL')
        assert summary['total_payments'] == Money.zero('BRL')
        assert summary['outstanding_receivables'] == Money.zero('BRL')


@pytest.mark.django_db
class TestExpenseRetry:

    def test_single_failure_is_retried(self, today):
        client = expense_client(DependencyError('expense_ledger', 'timeout'), Money(700, 'BRL'))

        summary = get_dashboard(today, today, expense_client=client)

        assert summary['total_expenses'] == Money(700, 'BRL')
        assert client.total_expenses.call_count == 2

    def test_second_failure_propagates(self, today):
        client = expense_client(
            DependencyError('expense_ledger', 'timeout'),
            DependencyError('expense_ledger', 'timeout again'),
        )

        with pytest.raises(DependencyError) as exc_info:
            get_dashboard(today, today, expense_client=client)

        assert exc_info.value.dependency == 'expense_ledger'
        assert client.total_expenses.call_count == 2

    @patch('apps.billing.dashboard.time.sleep')
    def test_retry_waits_for_backoff(self, mock_sleep, today, settings):
        settings.BILLING_DEPENDENCY_RETRY_BACKOFF_SECONDS = 0.25
        client = expense_client(DependencyError('expense_ledger', 'timeout'), Money.zero('BRL'))

        get_dashboard(today, today, expense_client=client)

        mock_sleep.assert_called_once_with(0.25)


# ============================================================================
# Expense ledger client
# ============================================================================

def _session_answering(payload=None, error=None, status_error=None):
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
        return session
    response = MagicMock()
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    session.get.return_value = response
    return session


class TestExpenseLedgerClient:

    FROM = date(2026, 9, 1)
    TO = date(2026, 9, 30)
    URL = 'http://expenses.internal/api/totals'

    def test_unconfigured_client_returns_zero(self):
        session = MagicMock()
        client = ExpenseLedgerClient(base_url='', session=session)

        assert not client.is_configured
        assert client.total_expenses(self.FROM, self.TO) == Money.zero('BRL')
        session.get.assert_not_called()

    def test_reads_total_with_timeout(self):
        session = _session_answering({'total_expenses': {'amount': 120000, 'currency': 'BRL'}})
        client = ExpenseLedgerClient(base_url=self.URL, timeout=2, session=session)

        assert client.total_expenses(self.FROM, self.TO) == Money(120000, 'BRL')
        session.get.assert_called_once_with(
            self.URL,
            params={'date_from': '2026-09-01', 'date_to': '2026-09-30'},
            timeout=2,
        )

    def test_timeout_is_a_dependency_error(self):
        session = _session_answering(error=requests.Timeout())
        client = ExpenseLedgerClient(base_url=self.URL, session=session)

        with pytest.raises(DependencyError, match='timed out'):
            client.total_expenses(self.FROM, self.TO)

    def test_connection_error_is_a_dependency_error(self):
        session = _session_answering(error=requests.ConnectionError())
        client = ExpenseLedgerClient(base_url=self.URL, session=session)

        with pytest.raises(DependencyError, match='unreachable'):
            client.total_expenses(self.FROM, self.TO)

    def test_http_error_is_a_dependency_error(self):
        session = _session_answering(payload={}, status_error=requests.HTTPError('502 Bad Gateway'))
        client = ExpenseLedgerClient(base_url=self.URL, session=session)

        with pytest.raises(DependencyError):
            client.total_expenses(self.FROM, self.TO)

    def test_invalid_json_is_a_dependency_error(self):
        session = _session_answering(payload=ValueError('Expecting value'))
        client = ExpenseLedgerClient(base_url=self.URL, session=session)

        with pytest.raises(DependencyError, match='invalid JSON'):
            client.total_expenses(self.FROM, self.TO)

    @pytest.mark.parametrize('payload', [
        {},
        {'total_expenses': None},
        {'total_expenses': {'currency': 'BRL'}},
    ])
    def test_malformed_payload_is_a_dependency_error(self, payload):
        client = ExpenseLedgerClient(base_url=self.URL, session=_session_answering(payload))

        with pytest.raises(DependencyError):
            client.total_expenses(self.FROM, self.TO)

    def test_decimal_amount_is_a_dependency_error(self):
        session = _session_answering({'total_expenses': {'amount': 1200.50, 'currency': 'BRL'}})
        client = ExpenseLedgerClient(base_url=self.URL, session=session)

        with pytest.raises(DependencyError, match='not an integer'):
            client.total_expenses(self.FROM, self.TO)

    def test_foreign_currency_is_a_dependency_error(self):
        session = _session_answering({'total_expenses': {'amount': 100, 'currency': 'USD'}})
        client = ExpenseLedgerClient(base_url=self.URL, session=session)

        with pytest.raises(DependencyError, match='USD'):
            client.total_expenses(self.FROM, self.TO)

    @patch('apps.billing.collaborators.metrics')
    def test_failures_are_counted(self, mock_metrics):
        client = ExpenseLedgerClient(base_url=self.URL, session=_session_answering(error=requests.Timeout()))

        with pytest.raises(DependencyError):
            client.total_expenses(self.FROM, self.TO)

        mock_metrics.billing_dependency_errors_total.labels.assert_called_once_with(dependency='expense_ledger')

    def test_owned_session_is_closed(self):
        with patch('apps.billing.collaborators.requests.Session') as session_cls:
            with ExpenseLedgerClient(base_url=self.URL):
                pass

        session_cls.return_value.close.assert_called_once()

    def test_callers_session_stays_open(self):
        session = MagicMock()

        with ExpenseLedgerClient(base_url=self.URL, session=session):
            pass

        session.close.assert_not_called()


@pytest.mark.django_db
class TestDashboardExpenseClientLifetime:

    @patch('apps.billing.dashboard.ExpenseLedgerClient')
    def test_dashboard_closes_its_own_client(self, client_cls, today):
        client = client_cls.return_value.__enter__.return_value
        client.total_expenses.return_value = Money.zero('BRL')

        get_dashboard(today, today)

        client_cls.return_value.__exit__.assert_called_once()

    @patch('apps.billing.dashboard.ExpenseLedgerClient')
    def test_client_is_closed_when_the_read_fails(self, client_cls, today):
        client = client_cls.return_value.__enter__.return_value
        client.total_expenses.side_effect = DependencyError('expense_ledger', 'down')
        client_cls.return_value.__exit__.return_value = False

        with pytest.raises(DependencyError):
            get_dashboard(today, today)

        client_cls.return_value.__exit__.assert_called_once()


# ============================================================================
# Revenue vs expense chart
# ============================================================================

@pytest.mark.django_db
class TestRevenueExpenseChart:

    def test_monthly_revenue_and_expenses(self, make_billing):
        make_billing(10000, billing_date=date(2026, 8, 10))
        make_billing(2500, billing_date=date(2026, 8, 28))
        make_billing(5000, billing_date=date(2026, 9, 3))
        client = expense_client(Money(4000, 'BRL'), Money(9000, 'BRL'))

        chart = get_revenue_expense_chart(date(2026, 8, 1), date(2026, 9, 30), expense_client=client)

        assert [row['month'] for row in chart['monthly_data']] == ['2026-08', '2026-09']
        assert [row['revenue'] for row in chart['monthly_data']] == [Money(12500, 'BRL'), Money(5000, 'BRL')]
        assert [row['expenses'] for row in chart['monthly_data']] == [Money(4000, 'BRL'), Money(9000, 'BRL')]
        assert [row['net_profit'] for row in chart['monthly_data']] == [Money(8500, 'BRL'), Money(-4000, 'BRL')]
        assert chart['total_revenue'] == Money(17500, 'BRL')
        assert chart['total_expenses'] == Money(13000, 'BRL')
        assert chart['net_profit'] == Money(4500, 'BRL')

    def test_revenue_follows_the_dashboard_rule(self, make_billing):
        make_billing(10000, billing_date=date(2026, 9, 3))
        cancelled = make_billing(7000, billing_date=date(2026, 9, 4))
        services.cancel_billing(cancelled.id, reason='Duplicate')
        disputed = make_billing(3000, billing_date=date(2026, 9, 5))
        services.dispute_billing(disputed.id, reason='Contested')

        chart = get_revenue_expense_chart(
            date(2026, 9, 1), date(2026, 9, 30), expense_client=expense_client(Money.zero('BRL'))
        )
        dashboard = get_dashboard(
            date(2026, 9, 1), date(2026, 9, 30), expense_client=expense_client(Money.zero('BRL'))
        )

        assert chart['monthly_data'][0]['revenue'] == Money(13000, 'BRL')
        assert chart['total_revenue'] == dashboard['total_revenue']

    def test_edge_months_are_clipped_to_the_range(self, make_billing):
        make_billing(10000, billing_date=date(2026, 8, 5))
        make_billing(5000, billing_date=date(2026, 8, 20))
        client = expense_client(Money.zero('BRL'), Money.zero('BRL'))

        chart = get_revenue_expense_chart(date(2026, 8, 15), date(2026, 9, 10), expense_client=client)

        first, second = chart['monthly_data']
        assert (first['period_start'], first['period_end']) == (date(2026, 8, 15), date(2026, 8, 31))
        assert (second['period_start'], second['period_end']) == (date(2026, 9, 1), date(2026, 9, 10))
        assert first['revenue'] == Money(5000, 'BRL')
        assert [c.args for c in client.total_expenses.call_args_list] == [
            (date(2026, 8, 15), date(2026, 8, 31)),
            (date(2026, 9, 1), date(2026, 9, 10)),
        ]

    def test_months_cross_the_year_boundary(self):
        client = expense_client(*[Money.zero('BRL')] * 3)

        chart = get_revenue_expense_chart(date(2025, 11, 20), date(2026, 1, 5), expense_client=client)

        assert [row['month'] for row in chart['monthly_data']] == ['2025-11', '2025-12', '2026-01']

    def test_empty_months_are_reported(self):
        chart = get_revenue_expense_chart(
            date(2026, 9, 1), date(2026, 9, 30), expense_client=expense_client(Money.zero('BRL'))
        )

        assert chart['monthly_data'][0]['revenue'] == Money.zero('BRL')

    def test_each_month_retries_once(self):
        client = expense_client(DependencyError('expense_ledger', 'timeout'), Money(700, 'BRL'))

        chart = get_revenue_expense_chart(date(2026, 9, 1), date(2026, 9, 30), expense_client=client)

        assert chart['monthly_data'][0]['expenses'] == Money(700, 'BRL')
        assert client.total_expenses.call_count == 2

    def test_inverted_range(self):
        with pytest.raises(RangeError):
            get_revenue_expense_chart(date(2026, 9, 30), date(2026, 9, 1))

    def test_range_is_capped(self):
        client = expense_client()
        start = date(2024, 1, 1)
        end = start + timedelta(days=31 * MAX_CHART_MONTHS)

        with pytest.raises(ValidationError):
            get_revenue_expense_chart(start, end, expense_client=client)

        client.total_expenses.assert_not_called()
