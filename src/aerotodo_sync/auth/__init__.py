"""Credential storage and access-token refresh."""

from .credentials import CredentialBundle, CredentialStore
from .refresher import TokenRefresher

__all__ = ["CredentialBundle", "CredentialStore", "TokenRefresher"]
