"""Error taxonomy for calls to the Ledger Service."""

from __future__ import annotations

STATUS_MESSAGES = {
    400: "The request could not be processed. Please check your details and try again.",
    403: "You do not have permission to do that.",
    404: "We could not find what you were looking for.",
    408: "The request took too long. Please try again.",
    409: "This trip has already been updated by someone else.",
    413: "The request was too large to send.",
    422: "Some of the details you entered are not valid.",
    429: "Too many requests. Please wait a moment and try again.",
    500: "Something went wrong on our side. Please try again shortly.",
    502: "The service is temporarily unreachable. Please try again shortly.",
    503: "The service is temporarily unavailable. Please try again shortly.",
    504: "The service took too long to respond. Please try again shortly.",
}
DEFAULT_MESSAGE = "Something went wrong. Please try again."


def message_for_status(status_code: int) -> str:
    """Return a plain-language message for an HTTP status code."""
    if status_code in STATUS_MESSAGES:
        return STATUS_MESSAGES[status_code]
    if status_code >= 500:
        return STATUS_MESSAGES[500]
    return DEFAULT_MESSAGE


class LedgerError(RuntimeError):
    """Raised when a Ledger Service request fails."""

    retryable = False

    def __init__(self, message: str, status_code: int = 0, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class NetworkError(LedgerError):
    """No connectivity or the transport failed before a response arrived."""

    retryable = True


class RequestTimeoutError(LedgerError):
    """The request exceeded its deadline."""

    retryable = True


class ServerError(LedgerError):
    """The Ledger answered with a 5xx status."""

    retryable = True


class RateLimitError(LedgerError):
    """The Ledger answered with 429."""

    retryable = True


class ValidationError(LedgerError):
    """The Ledger rejected the request body (400/422)."""


class AuthExpiredError(LedgerError):
    """401 on a protected endpoint; the local session has been torn down."""


class InvalidCredentialsError(LedgerError):
    """401 on an authentication endpoint."""


class ForbiddenError(LedgerError):
    """403: the identity is not allowed to perform the action."""


class RequestCancelledError(LedgerError):
    """The caller's cancellation signal fired before the result was delivered."""


class TripStateError(LedgerError):
    """A trip transition was rejected locally before reaching the Ledger."""


__all__ = [
    "AuthExpiredError",
    "ForbiddenError",
    "InvalidCredentialsError",
    "LedgerError",
    "NetworkError",
    "RateLimitError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "ServerError",
    "TripStateError",
    "ValidationError",
    "message_for_status",
]
