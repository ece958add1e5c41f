"""
Prometheus metrics for the billing ledger.
"""
import time
from functools import wraps

from prometheus_client import Counter, Histogram


class MetricsRegistry:
    """
    Central metrics registry.

    Provides typed access to all application metrics.
    """

    def __init__(self):
        self._setup_metrics()

    def _create_counter(self, name, description, labels=None):
        return Counter(name, description, labels or [])

    def _create_histogram(self, name, description, labels=None, buckets=None):
        if buckets:
            return Histogram(name, description, labels or [], buckets=buckets)
        return Histogram(name, description, labels or [])

    def _setup_metrics(self):

        # ===================================================================
        # HTTP Metrics
        # ===================================================================
        self.http_requests_total = self._create_counter(
            'http_requests_total',
            'Total HTTP requests',
            ['path', 'method', 'status']
        )

        self.exceptions_total = self._create_counter(
            'exceptions_total',
            'Total exceptions',
            ['exception_type', 'location']
        )

        # ===================================================================
        # Billing Metrics
        # ===================================================================
        self.billing_created_total = self._create_counter(
            'billing_created_total',
            'Billing records created',
            ['billing_type', 'result']
        )

        self.billing_payments_total = self._create_counter(
            'billing_payments_total',
            'Payment ledger writes',
            ['kind', 'result']  # kind: payment|correction|refund
        )

        self.billing_overpayments_total = self._create_counter(
            'billing_overpayments_total',
            'Payments that left a billing record overpaid'
        )

        self.billing_transition_total = self._create_counter(
            'billing_transition_total',
            'Explicit billing status commands',
            ['to_status', 'result']
        )

        self.billing_payment_write_duration_seconds = self._create_histogram(
            'billing_payment_write_duration_seconds',
            'Duration of the locked payment write',
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
        )

        # ===================================================================
        # Reporting Metrics
        # ===================================================================
        self.billing_aging_report_duration_seconds = self._create_histogram(
            'billing_aging_report_duration_seconds',
            'Receivable aging report generation duration',
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
        )

        self.billing_payout_total = self._create_counter(
            'billing_payout_total',
            'Physician payout calculations and payments',
            ['operation', 'result']  # operation: calculate|mark_paid
        )

        self.billing_dashboard_total = self._create_counter(
            'billing_dashboard_total',
            'Revenue dashboard queries',
            ['result']
        )

        self.billing_revenue_chart_total = self._create_counter(
            'billing_revenue_chart_total',
            'Monthly revenue vs expense chart queries',
            ['result']
        )

        self.billing_dependency_errors_total = self._create_counter(
            'billing_dependency_errors_total',
            'External collaborator failures',
            ['dependency']
        )

    def track_duration(self, histogram_metric):
        """
        Decorator to track function duration.

        Usage:
            @metrics.track_duration(metrics.billing_aging_report_duration_seconds)
            def build_aging_report(as_of=None):
                ...
        """
        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                start_time = time.time()
                try:
                    return func(*args, **kwargs)
                finally:
                    histogram_metric.observe(time.time() - start_time)
            return wrapper
        return decorator


# Global metrics instance
metrics = MetricsRegistry()
