"""DRF authentication for the ledger API."""
from rest_framework_simplejwt.authentication import JWTAuthentication

from .observability.correlation import bind_user


class CorrelatedJWTAuthentication(JWTAuthentication):
    """JWT authentication that also tags the request's log records with the user."""

    def authenticate(self, request):
        result = super().authenticate(request)
        if result is not None:
            bind_user(result[0])
        return result
