"""OAuth credential bundle and its store.

The bundle is produced once by the external authorization-code exchange,
replaced by every successful refresh, and cleared on disconnect or on a
revoked grant.
"""

from __future__ import annotations

import datetime as dt
import logging

from pydantic import BaseModel, ValidationError, field_validator

from ..errors import ConfigError
from ..state import SettingsBackend, read_section, write_section
from ..sync.models import ensure_aware, utcnow

logger = logging.getLogger(__name__)

CREDENTIALS_KEY = "credentials"


class CredentialBundle(BaseModel):
    """Access/refresh token pair with the access token's expiry."""

    access_token: str
    refresh_token: str
    expires_at: dt.datetime

    model_config = {"frozen": True}

    @field_validator("expires_at")
    @classmethod
    def _aware(cls, value: dt.datetime) -> dt.datetime:
        return ensure_aware(value)

    @classmethod
    def from_token_response(
        cls,
        access_token: str,
        refresh_token: str,
        expires_in: float,
        now: dt.datetime | None = None,
    ) -> CredentialBundle:
        """Build a bundle from an ``expires_in`` relative lifetime."""
        issued = now or utcnow()
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=issued + dt.timedelta(seconds=expires_in),
        )

    def expires_within(
        self, margin: dt.timedelta, now: dt.datetime | None = None
    ) -> bool:
        """True if the access token expires before ``now + margin``."""
        return self.expires_at <= (now or utcnow()) + margin

    def __repr__(self) -> str:
        # Never leak tokens into logs or tracebacks
        return f"CredentialBundle(expires_at={self.expires_at.isoformat()})"

    __str__ = __repr__


class CredentialStore:
    """Get/set/clear the credential bundle in the settings document."""

    def __init__(self, backend: SettingsBackend) -> None:
        self._backend = backend

    def get(self) -> CredentialBundle | None:
        """Return the stored bundle, or ``None`` when not connected.

        Raises:
            ConfigError: If the stored section is malformed.
        """
        raw = read_section(self._backend, CREDENTIALS_KEY)
        if not raw:
            return None
        try:
            return CredentialBundle.model_validate(raw)
        except ValidationError as exc:
            raise ConfigError(f"Stored credentials are invalid: {exc}") from exc

    def require(self) -> CredentialBundle:
        """Return the stored bundle or raise ``ConfigError``."""
        bundle = self.get()
        if bundle is None:
            raise ConfigError(
                "Google Calendar is not connected: no credentials stored"
            )
        return bundle

    def set(self, bundle: CredentialBundle) -> None:
        write_section(
            self._backend, CREDENTIALS_KEY, bundle.model_dump(mode="json")
        )
        logger.debug("Stored credentials expiring at %s", bundle.expires_at)

    def clear(self) -> None:
        write_section(self._backend, CREDENTIALS_KEY, None)
        logger.info("Cleared stored Google Calendar credentials")
