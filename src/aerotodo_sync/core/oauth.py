"""Client for the OAuth token endpoint (refresh grant).

The authorization-code exchange that produces the first bundle happens in
the host application; this module only renews access tokens.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import requests

from ..config import Config
from ..errors import AuthRevokedError, AuthTransientError

logger = logging.getLogger(__name__)

# Error codes (RFC 6749 section 5.2) meaning the refresh token itself is dead
REVOKED_GRANT_ERRORS = frozenset({"invalid_grant"})


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: float
    refresh_token: str | None = None


class TokenEndpoint:
    """POST ``grant_type=refresh_token`` requests to the token URL."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._thread_local = threading.local()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = requests.Session()
        return self._thread_local.session

    def refresh(self, refresh_token: str) -> TokenResponse:
        """Exchange *refresh_token* for a new access token.

        Returns:
            The new access token and its lifetime.  ``refresh_token`` is set
            only if the server rotated it.

        Raises:
            AuthRevokedError: The server answered ``invalid_grant``.
            AuthTransientError: Any other failure (network, 5xx, malformed
                response, other OAuth errors).
        """
        try:
            response = self._get_session().post(
                self.config.token_url,
                data={
                    "refresh_token": refresh_token,
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "grant_type": "refresh_token",
                },
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise AuthTransientError(f"Token refresh failed: {exc}") from exc

        if not response.ok:
            error_code, description = _parse_oauth_error(response)
            message = (
                f"Token refresh rejected ({response.status_code}): "
                f"{description or error_code or 'no details'}"
            )
            if error_code in REVOKED_GRANT_ERRORS:
                raise AuthRevokedError(message)
            raise AuthTransientError(message)

        try:
            payload = response.json()
            return TokenResponse(
                access_token=payload["access_token"],
                expires_in=float(payload.get("expires_in", 3600)),
                refresh_token=payload.get("refresh_token"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthTransientError(
                f"Malformed token refresh response: {exc}"
            ) from exc


def _parse_oauth_error(response: requests.Response) -> tuple[str | None, str | None]:
    """Return ``(error, error_description)`` from an OAuth error body."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    return body.get("error"), body.get("error_description")
