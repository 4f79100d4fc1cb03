"""HTTP transport for Google OAuth and Calendar, shared by the engine and CLI."""

from .async_utils import run_sync

__all__ = ["run_sync"]
