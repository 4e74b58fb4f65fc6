from typing import Optional

from fastapi import HTTPException, status


class SafeWorkError(Exception):
    """Base exception for SafeWork push delivery."""

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(SafeWorkError):
    """Malformed subscription data, preferences or notification payload."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message, code="validation_error")
        self.errors = errors or [message]


class NotFoundError(SafeWorkError):
    """Requested subscription or history entry does not exist."""

    pass


class AuthorizationError(SafeWorkError):
    """Caller does not own the resource."""

    pass


class InvalidTransitionError(SafeWorkError):
    """History entry cannot move to the requested status."""

    pass


class KeyConfigurationError(SafeWorkError):
    """VAPID keys are missing or malformed."""

    pass


class TransportError(SafeWorkError):
    """Network failure or 5xx response from a push service. Retryable."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, code="transport_error")
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimitError(TransportError):
    """Push service answered 429. Retryable, honoring Retry-After."""

    pass


class PermanentSubscriptionError(TransportError):
    """Subscription is gone, invalid or expired. Never retried."""

    retryable = False


# HTTP Exceptions
def not_found(detail: str = "Resource not found") -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def bad_request(detail: str | list | dict = "Bad request") -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def forbidden(detail: str = "Forbidden") -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def conflict(detail: str = "Conflict") -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def bad_gateway(detail: str | dict = "Bad gateway") -> HTTPException:
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


def service_unavailable(detail: str = "Service unavailable") -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
