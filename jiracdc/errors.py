"""Exception taxonomy for the sync engine and orchestrator"""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for all jiracdc errors."""

    # Connectivity-class errors abort the remaining tasks of an operation.
    connectivity = False

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SourceAPIError(SyncError):
    """Non-2xx response from the source service."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: str = "",
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.body = body


class AuthenticationError(SourceAPIError):
    """Invalid or expired credentials. Never retried automatically."""

    connectivity = True


class CredentialsError(AuthenticationError):
    """Credentials could not be resolved from the secret store."""


class NotFoundError(SourceAPIError):
    """Referenced issue or project does not exist."""


class TransientAPIError(SourceAPIError):
    """5xx, 429 or timeout; eligible for bounded retry."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class SourceUnavailableError(TransientAPIError):
    """The source could not be reached at all."""

    connectivity = True


class GitWriteError(SyncError):
    """Commit or push failure on the target repository."""

    connectivity = True


class ValidationError(SyncError):
    """Malformed operation config or task graph, detected before execution."""


class OperationCancelledError(SyncError):
    """Raised at a cooperative cancellation point."""


class OperationConflictError(SyncError):
    """Single-flight rejection: an operation is already active for the target."""

    def __init__(self, message: str, *, active_operation_id: Optional[str] = None):
        super().__init__(message)
        self.active_operation_id = active_operation_id


class OperationNotFoundError(SyncError, LookupError):
    """Unknown operation id."""


class InvalidOperationStateError(SyncError):
    """Requested transition is not valid for the operation's current status."""


class WaitTimeoutError(SyncError):
    """wait_for_completion gave up before the operation reached a terminal state."""

    def __init__(self, message: str, *, operation: Any):
        super().__init__(message)
        self.operation = operation


def is_connectivity_error(exc: BaseException) -> bool:
    return isinstance(exc, SyncError) and exc.connectivity
