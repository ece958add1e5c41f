"""
Tracing support via the OpenTelemetry API.

Without a configured SDK the API hands out non-recording spans, so these
helpers are safe to call everywhere.
"""
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

logger = logging.getLogger(__name__)

tracer = trace.get_tracer('billing-ledger')

SPAN_KINDS = {
    'server': SpanKind.SERVER,
    'client': SpanKind.CLIENT,
    'internal': SpanKind.INTERNAL,
}


@contextmanager
def trace_span(
    name: str,
    kind: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None
):
    """
    Context manager for creating trace spans.

    Args:
        name: Span name
        kind: Span kind (server, client, internal)
        attributes: Span attributes

    Usage:
        with trace_span('billing.add_payment', attributes={'billing_id': str(billing.id)}):
            # ... operation ...
    """
    start_time = time.time()

    with tracer.start_as_current_span(name, kind=SPAN_KINDS.get(kind, SpanKind.INTERNAL)) as span:
        for key, value in (attributes or {}).items():
            span.set_attribute(key, value)

        try:
            yield span
        except Exception as e:
            span.set_attribute('error.type', e.__class__.__name__)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            logger.debug(
                f'Span failed: {name}',
                extra={
                    'event': 'span_error',
                    'span_name': name,
                    'duration_ms': round((time.time() - start_time) * 1000, 2),
                    'error_type': e.__class__.__name__,
                }
            )
            raise


def add_span_attribute(key: str, value: Any):
    """Add attribute to current span if it is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute(key, value)
