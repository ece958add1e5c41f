"""
Clients for external collaborators consumed by the ledger.

Every call carries a hard timeout and fails with DependencyError instead of
hanging or leaking transport exceptions.
"""
from datetime import date

import requests
from django.conf import settings

from apps.core.observability import metrics, get_sanitized_logger
from apps.core.observability.tracing import trace_span

from .exceptions import DependencyError
from .money import Money, default_currency

logger = get_sanitized_logger(__name__)

EXPENSE_LEDGER = 'expense_ledger'


class ExpenseLedgerClient:
    """
    Reads expense totals from the expense ledger service.

    Expected response:
        {"total_expenses": {"amount": 120000, "currency": "BRL"}}

    Without a configured URL the clinic has no expense ledger and expenses
    are zero.
    """

    def __init__(self, base_url=None, timeout=None, session=None):
        self.base_url = base_url if base_url is not None else getattr(settings, 'BILLING_EXPENSE_LEDGER_URL', '')
        self.timeout = timeout or getattr(settings, 'BILLING_DEPENDENCY_TIMEOUT_SECONDS', 5)
        self._owns_session = session is None
        self.session = session or requests.Session()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        """Release pooled connections. A session passed in by the caller stays open."""
        if self._owns_session:
            self.session.close()

    @property
    def is_configured(self):
        return bool(self.base_url)

    def _fail(self, message, **extra):
        metrics.billing_dependency_errors_total.labels(dependency=EXPENSE_LEDGER).inc()
        logger.warning(
            'Expense ledger call failed',
            extra={'dependency': EXPENSE_LEDGER, 'error': message, **extra}
        )
        return DependencyError(EXPENSE_LEDGER, message)

    def total_expenses(self, date_from: date, date_to: date) -> Money:
        currency = default_currency()
        if not self.is_configured:
            return Money.zero(currency)

        params = {'date_from': date_from.isoformat(), 'date_to': date_to.isoformat()}

        with trace_span('expense_ledger.total_expenses', kind='client', attributes=params):
            try:
                response = self.session.get(self.base_url, params=params, timeout=self.timeout)
                response.raise_for_status()
            except requests.Timeout:
                raise self._fail(f'Expense ledger timed out after {self.timeout}s')
            except requests.RequestException as e:
                raise self._fail(f'Expense ledger unreachable: {e.__class__.__name__}')

            try:
                payload = response.json()
            except ValueError:
                raise self._fail('Expense ledger answered with invalid JSON')

        try:
            total = payload['total_expenses']
            amount = total['amount']
            answered_currency = total.get('currency', currency)
        except (KeyError, TypeError):
            raise self._fail('Expense ledger response is missing total_expenses')

        if isinstance(amount, bool) or not isinstance(amount, int):
            raise self._fail('Expense ledger amount is not an integer of minor units')
        if answered_currency != currency:
            raise self._fail(
                f'Expense ledger answered in {answered_currency}, ledger runs in {currency}'
            )

        return Money(amount, currency)
