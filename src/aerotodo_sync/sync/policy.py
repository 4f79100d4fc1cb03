"""Sync policy: the configuration snapshot read at the start of each cycle.

Scope rules:

* ``sync_all_tasks`` -- every task participates; unscheduled tasks are
  pushed as all-day entries on the cycle's date.
* otherwise (including ``sync_time_blocked_only``) -- only tasks with a
  date participate.

``two_way=False`` is push-only: local changes go out, remote edits to
linked events and new untagged remote events are ignored.

``import_profile_id`` assigns tasks imported or pulled from the calendar
to one planner profile; linked tasks still elsewhere are moved there
once they are otherwise in sync.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from pydantic import BaseModel, ValidationError

from ..errors import ConfigError
from ..state import SettingsBackend, read_section, write_section
from .models import SyncReport, Task

logger = logging.getLogger(__name__)

CONNECTION_KEY = "google_calendar"


class SyncPolicy(BaseModel):
    """Immutable policy snapshot."""

    enabled: bool = True
    two_way: bool = False
    sync_all_tasks: bool = False
    sync_time_blocked_only: bool = True
    delete_remote_on_local_delete: bool = False
    import_profile_id: str | None = None

    model_config = {"frozen": True}

    def in_scope(self, task: Task) -> bool:
        """Whether *task* participates in sync under this policy."""
        if self.sync_all_tasks:
            return True
        return task.date is not None

    def partition(
        self, tasks: Iterable[Task]
    ) -> tuple[list[Task], list[Task]]:
        """Split *tasks* into ``(in_scope, out_of_scope)``."""
        inside: list[Task] = []
        outside: list[Task] = []
        for task in tasks:
            (inside if self.in_scope(task) else outside).append(task)
        return inside, outside


class PolicyStore:
    """Persist the policy and connection status in the settings document.

    Args:
        backend: Settings collaborator.
        defaults: Policy used until one has been saved.
    """

    def __init__(
        self,
        backend: SettingsBackend,
        defaults: SyncPolicy | None = None,
    ) -> None:
        self._backend = backend
        self._defaults = defaults or SyncPolicy()

    def _section(self) -> dict[str, Any]:
        section = read_section(self._backend, CONNECTION_KEY)
        return dict(section) if isinstance(section, dict) else {}

    def _write(self, section: dict[str, Any]) -> None:
        write_section(self._backend, CONNECTION_KEY, section)

    def load(self) -> SyncPolicy:
        """Return the saved policy, or the defaults if none was saved.

        Raises:
            ConfigError: If the saved policy is malformed.
        """
        raw = self._section().get("policy")
        if raw is None:
            return self._defaults
        try:
            return SyncPolicy.model_validate(raw)
        except ValidationError as exc:
            raise ConfigError(f"Stored sync policy is invalid: {exc}") from exc

    def save(self, policy: SyncPolicy) -> None:
        section = self._section()
        section["policy"] = policy.model_dump()
        if policy.enabled:
            section.pop("disabled_reason", None)
        self._write(section)

    def disable(self, reason: str) -> SyncPolicy:
        """Turn sync off, keeping the rest of the policy."""
        policy = self.load().model_copy(update={"enabled": False})
        section = self._section()
        section["policy"] = policy.model_dump()
        section["disabled_reason"] = reason
        self._write(section)
        logger.warning("Google Calendar sync disabled: %s", reason)
        return policy

    def record_cycle(self, report: SyncReport) -> None:
        """Remember when the last cycle ran and how it ended."""
        section = self._section()
        section["last_sync_at"] = report.completed_at
        if report.skipped_reason:
            section["last_error"] = report.skipped_reason
        elif report.errors:
            section["last_error"] = (
                f"{len(report.errors)} item(s) failed; "
                f"first: {report.errors[0].error}"
            )
        else:
            section["last_error"] = None
        self._write(section)

    def status(self) -> dict[str, Any]:
        """Connection status fields for display."""
        section = self._section()
        return {
            "policy": self.load().model_dump(),
            "last_sync_at": section.get("last_sync_at"),
            "last_error": section.get("last_error"),
            "disabled_reason": section.get("disabled_reason"),
        }
