"""Exception taxonomy for the calendar sync engine.

The hierarchy mirrors how failures are handled during a cycle:

- ``AuthRevokedError`` -- the refresh token is invalid or revoked.  The
  connection is disabled and credentials are cleared; never retried.
- ``AuthTransientError`` -- a temporary auth failure (including a 401 from
  the calendar API with a stale access token).  Retried once after a
  fresh refresh.
- ``TransientNetworkError`` -- timeout, connection failure, 429 or 5xx.
  Retried with bounded backoff, then the affected item is skipped for
  the current cycle.
- ``RemoteCalendarError`` -- a permanent API error for one request.
- ``ConfigError`` -- missing credentials or settings; the cycle is skipped.

Conflicts between local and remote edits are not exceptions: they are
resolved by the reconciler and reported as ``SyncAction.CONFLICT``.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync engine errors."""


class AuthError(SyncError):
    """Base class for credential failures."""


class AuthRevokedError(AuthError):
    """The refresh token was rejected as invalid or revoked."""


class AuthTransientError(AuthError):
    """A temporary authentication failure that may succeed after a refresh."""


class NetworkError(SyncError):
    """Base class for transport failures."""


class TransientNetworkError(NetworkError):
    """Timeout, connection error, rate limit or server error.

    Args:
        message: Human-readable description.
        status_code: HTTP status, or ``None`` for transport failures.
        retry_after: Server-provided retry delay in seconds, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RemoteCalendarError(SyncError):
    """Non-retryable error response from the calendar API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFoundError(RemoteCalendarError):
    """The requested event does not exist (404) or is gone (410)."""


class ConfigError(SyncError):
    """Missing or invalid configuration, credentials or policy."""
