"""Exception hierarchy shared by the Open Dental connector and its callers."""
from __future__ import annotations

from typing import Optional


class OpenDentalError(RuntimeError):
    """Base exception for Open Dental integration errors."""


class ValidationError(OpenDentalError, ValueError):
    """Raised when local input is malformed; never sent to the remote system."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class CredentialsUnavailable(OpenDentalError):
    """Raised when no API keys can be resolved for a practice."""


class OperationCancelledError(OpenDentalError):
    """Raised at a suspension point after the caller requested cancellation."""


class TransportError(OpenDentalError):
    """Network-level failure (connection reset, DNS, timeout)."""


class RemoteError(OpenDentalError):
    """The remote system answered with a non-success status."""

    def __init__(self, status_code: int, message: str = "") -> None:
        text = message or "no message supplied"
        super().__init__(f"Open Dental responded with status {status_code}: {text}")
        self.status_code = status_code
        self.message = message


class AuthenticationError(RemoteError):
    """401: the developer/customer key pair was rejected."""


class BadRequestError(RemoteError):
    """400: the remote system refused the payload."""


class NotFoundError(RemoteError):
    """404 for a lookup by identifier."""


class RateLimitedError(RemoteError):
    """429: the remote asked us to slow down."""

    def __init__(self, status_code: int, message: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(status_code, message)
        self.retry_after = retry_after


class ServerError(RemoteError):
    """5xx from the remote system."""


class UnexpectedResponseError(OpenDentalError):
    """A success response whose body does not have the expected shape."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"unexpected response from {path}: {message}")
        self.path = path


class RemoteUnavailableError(OpenDentalError):
    """Transient failures persisted past the retry budget."""

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"Open Dental unavailable after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class SyncIncompleteError(OpenDentalError):
    """A synchronization run stopped early; ``committed`` records were kept."""

    def __init__(
        self,
        entity_kind: str,
        committed: int,
        cause: Optional[BaseException] = None,
        *,
        cancelled: bool = False,
    ) -> None:
        reason = "cancelled" if cancelled else f"aborted: {cause}"
        super().__init__(f"{entity_kind} sync {reason} after {committed} record(s) committed")
        self.entity_kind = entity_kind
        self.committed = committed
        self.cause = cause
        self.cancelled = cancelled


class DispatchFailedError(OpenDentalError):
    """A task failed at ``step``; ``compensation_needed`` flags remote state left behind."""

    def __init__(self, step: str, message: str, *, compensation_needed: bool = False) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step
        self.compensation_needed = compensation_needed


TRANSIENT_ERRORS = (TransportError, ServerError, RateLimitedError)


__all__ = [
    "AuthenticationError",
    "BadRequestError",
    "CredentialsUnavailable",
    "DispatchFailedError",
    "NotFoundError",
    "OpenDentalError",
    "OperationCancelledError",
    "RateLimitedError",
    "RemoteError",
    "RemoteUnavailableError",
    "ServerError",
    "SyncIncompleteError",
    "TRANSIENT_ERRORS",
    "TransportError",
    "UnexpectedResponseError",
    "ValidationError",
]
