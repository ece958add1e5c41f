"""
Structured logging with PHI/PII and payment-detail redaction.

Provides the correlation filter, the JSON formatter and the sanitizing helpers
shared by log records, domain events and the ledger audit trail.
"""
import json
import logging
from datetime import datetime, timezone

from .correlation import get_request_id, get_trace_id, get_user_id


# Keys that are never written to logs or audit metadata
SENSITIVE_FIELDS = {
    'password',
    'token',
    'secret',
    'api_key',
    'authorization',
    'notes',
    'patient_name',
    'first_name',
    'last_name',
    'email',
    'phone',
    'cpf',
    'address',
    'date_of_birth',
    'insurance_number',
    'account_number',
    'bank_name',
    'check_number',
    'transaction_id',
}

REDACTED = '[REDACTED]'

# Attributes every LogRecord carries; not copied into the JSON payload
_STANDARD_RECORD_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName',
}


def _is_sensitive(key):
    return isinstance(key, str) and key.lower() in SENSITIVE_FIELDS


def sanitize_value(value):
    """Redact sensitive keys recursively inside dicts, lists and tuples."""
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(k) else sanitize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_value(v) for v in value]
    return value


def sanitize_dict(data):
    """
    Sanitize a dictionary by redacting sensitive fields.

    Non-dict input is returned unchanged.
    """
    if not isinstance(data, dict):
        return data
    return sanitize_value(data)


class CorrelationFilter(logging.Filter):
    """Inject correlation context into log records."""

    def filter(self, record):
        record.request_id = get_request_id() or '-'
        record.trace_id = get_trace_id() or '-'
        record.user_id = get_user_id() or '-'
        return True


class SanitizedJSONFormatter(logging.Formatter):
    """JSON formatter that redacts sensitive fields."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'request_id': getattr(record, 'request_id', '-'),
            'trace_id': getattr(record, 'trace_id', '-'),
            'user_id': getattr(record, 'user_id', '-'),
        }

        # Fields passed through extra={}
        for key, value in record.__dict__.items():
            if key in log_data or key.startswith('_') or key in _STANDARD_RECORD_ATTRS:
                continue
            log_data[key] = REDACTED if _is_sensitive(key) else sanitize_value(value)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def get_sanitized_logger(name):
    """
    Get a logger with the correlation filter applied.

    Usage:
        logger = get_sanitized_logger(__name__)
        logger.info('Payment recorded', extra={'billing_id': str(billing.id)})
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationFilter) for f in logger.filters):
        logger.addFilter(CorrelationFilter())

    return logger
