"""
Request correlation middleware.

Generates/propagates X-Request-ID, stores the acting user for log records and
records per-request HTTP metrics.
"""
import logging
import time
import uuid
from threading import local

from django.utils.deprecation import MiddlewareMixin

# Thread-local storage for request context
_request_context = local()

logger = logging.getLogger(__name__)


def get_request_id():
    return getattr(_request_context, 'request_id', None)


def get_trace_id():
    return getattr(_request_context, 'trace_id', None)


def get_user_id():
    return getattr(_request_context, 'user_id', None)


class RequestCorrelationMiddleware(MiddlewareMixin):
    """
    Middleware to handle request correlation.

    - Generates/propagates X-Request-ID
    - Extracts trace id from headers
    - Stores context in thread-local for logging
    - Adds correlation headers to response
    - Counts requests and logs their duration
    """

    REQUEST_ID_HEADER = 'HTTP_X_REQUEST_ID'
    TRACE_ID_HEADER = 'HTTP_X_TRACE_ID'

    def process_request(self, request):
        request_id = request.META.get(self.REQUEST_ID_HEADER) or str(uuid.uuid4())
        trace_id = request.META.get(self.TRACE_ID_HEADER)

        request.request_id = request_id
        request.trace_id = trace_id
        request.start_time = time.time()

        _request_context.request_id = request_id
        _request_context.trace_id = trace_id

        bind_user(getattr(request, 'user', None))

    def process_response(self, request, response):
        if hasattr(request, 'request_id'):
            response['X-Request-ID'] = request.request_id

        if getattr(request, 'trace_id', None):
            response['X-Trace-ID'] = request.trace_id

        if hasattr(request, 'start_time'):
            from .metrics import metrics

            duration_ms = (time.time() - request.start_time) * 1000
            metrics.http_requests_total.labels(
                path=getattr(request, 'path', ''),
                method=getattr(request, 'method', ''),
                status=str(getattr(response, 'status_code', '')),
            ).inc()

            logger.info(
                'Request completed',
                extra={
                    'event': 'http_request_completed',
                    'path': request.path,
                    'method': request.method,
                    'status_code': getattr(response, 'status_code', None),
                    'duration_ms': round(duration_ms, 2),
                }
            )

        clear_request_context()
        return response

    def process_exception(self, request, exception):
        from .metrics import metrics

        duration_ms = 0
        if hasattr(request, 'start_time'):
            duration_ms = (time.time() - request.start_time) * 1000

        metrics.exceptions_total.labels(
            exception_type=exception.__class__.__name__,
            location='http',
        ).inc()

        logger.error(
            f'Request failed: {exception.__class__.__name__}',
            exc_info=True,
            extra={
                'event': 'http_request_exception',
                'path': request.path,
                'method': request.method,
                'exception_type': exception.__class__.__name__,
                'duration_ms': round(duration_ms, 2),
            }
        )


def bind_user(user):
    """Attach the acting user to log records. DRF authenticates after middleware has run."""
    if user is not None and user.is_authenticated:
        _request_context.user_id = str(user.pk)
    else:
        _request_context.user_id = None


def clear_request_context():
    """Clear thread-local request context."""
    for attr in ['request_id', 'trace_id', 'user_id']:
        if hasattr(_request_context, attr):
            delattr(_request_context, attr)
