"""
Health check endpoints.

/healthz answers as long as the process runs; /readyz also checks the ledger
database.
"""
import logging

from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.views import View

logger = logging.getLogger(__name__)


class HealthzView(View):
    """Liveness probe. Does not check dependencies."""

    def get(self, request):
        health_data = {
            'status': 'ok',
            'version': getattr(settings, 'VERSION', 'unknown'),
            'currency': getattr(settings, 'BILLING_CURRENCY', 'BRL'),
        }

        commit_hash = getattr(settings, 'COMMIT_HASH', None)
        if commit_hash:
            health_data['commit'] = commit_hash

        return JsonResponse(health_data, status=200)


class ReadyzView(View):
    """Readiness probe: 503 until the ledger database answers."""

    def get(self, request):
        checks = {
            'database': self._check_database(),
        }
        all_healthy = all(checks.values())

        return JsonResponse(
            {'status': 'ready' if all_healthy else 'not_ready', 'checks': checks},
            status=200 if all_healthy else 503,
        )

    def _check_database(self):
        try:
            with connection.cursor() as cursor:
                cursor.execute('SELECT 1')
            return True
        except DatabaseError as e:
            logger.error(
                'Database health check failed',
                extra={'event': 'health_check_failed', 'check': 'database', 'error': str(e)}
            )
            return False
