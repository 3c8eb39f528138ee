"""Error taxonomy shared by the broker services and HTTP layer.

Every error is an ``HTTPException`` whose ``detail`` is a dict with ``error_code``
and ``message``; any other keys in ``detail`` are merged into the response body by
the exception handler in ``main``.
"""

from fastapi import HTTPException, status


class BrokerError(HTTPException):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "internal_error"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, *, headers: dict[str, str] | None = None, **extra) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(
            status_code=type(self).status_code,
            detail={"error_code": self.error_code, "message": self.message, **extra},
            headers=headers,
        )

    def __str__(self) -> str:
        return self.message


class InvalidInput(BrokerError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "invalid_input"
    default_message = "Invalid input"


class Unauthorized(BrokerError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "unauthorized"
    default_message = "Unauthorized"


class Forbidden(BrokerError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "forbidden"
    default_message = "Forbidden"


class NotFound(BrokerError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "not_found"
    default_message = "Not found"


class AlreadyConnected(BrokerError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "already_connected"
    default_message = "Platform is already connected"


class ConnectionInProgress(BrokerError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "connection_in_progress"
    default_message = "Another connection attempt is in progress"


class NotConnected(BrokerError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "not_connected"
    default_message = "Platform is not connected"


class RateLimited(BrokerError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "rate_limited"
    default_message = "Too many requests, please try again later."

    def __init__(self, message: str | None = None, *, retry_after: int) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            message,
            headers={"Retry-After": str(self.retry_after)},
            retryAfter=self.retry_after,
        )


class PlatformNotImplemented(BrokerError):
    status_code = status.HTTP_501_NOT_IMPLEMENTED
    error_code = "not_implemented"
    default_message = "Platform integration coming soon"


class SessionExpired(BrokerError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "session_expired"
    default_message = "Session expired. Please try connecting again."


class InsufficientCredits(BrokerError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    error_code = "insufficient_credits"
    default_message = "Insufficient credits"

    def __init__(self, message: str | None = None, *, required: int, balance: int) -> None:
        self.required = required
        self.balance = balance
        super().__init__(message, required=required, balance=balance)


class AdapterFailure(BrokerError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "adapter_failure"
    default_message = "Platform request failed"


class ActionFailed(BrokerError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "action_failed"
    default_message = "Action failed"

    def __init__(self, message: str | None = None, *, action_type: str, refunded: bool) -> None:
        self.action_type = action_type
        self.refunded = refunded
        super().__init__(message, actionType=action_type, refunded=refunded)
