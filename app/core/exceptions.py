"""Error taxonomy for subscription and payment flows."""

from typing import Any, Dict, Optional

from fastapi import status


class PaymentsAPIError(Exception):
    """Base error; carries the HTTP status it is rendered with."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(PaymentsAPIError):
    """Bad plan or collection-date selection, or an inconsistent request."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(PaymentsAPIError):
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class AuthorizationError(PaymentsAPIError):
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class NotFoundError(PaymentsAPIError):
    status_code = status.HTTP_404_NOT_FOUND


class ProviderError(PaymentsAPIError):
    """Gateway returned a non-success status, an unparsable body, or was unreachable."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        raw_response: Any = None,
    ):
        super().__init__(message, {"provider": provider, "provider_status": status_code})
        self.provider = provider
        self.provider_status = status_code
        self.raw_response = raw_response


class WebhookSignatureError(PaymentsAPIError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PersistenceError(PaymentsAPIError):
    """Datastore write failed."""


class LedgerStateError(PersistenceError):
    """A transaction was asked to make a transition its current status forbids."""

    status_code = status.HTTP_409_CONFLICT


class RateLimitError(PaymentsAPIError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str = "Rate limit exceeded"):
        super().__init__(message)
