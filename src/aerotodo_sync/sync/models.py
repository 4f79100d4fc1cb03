"""Pydantic models for the calendar sync engine.

Defines the data contracts used across all sync modules:

- ``Task`` / ``TaskDraft``: planner tasks as seen through the local store.
- ``RemoteEvent`` / ``EventDraft``: calendar events as read and written.
- ``SyncLink``: persisted 1:1 association between a task and an event.
- ``TimeWindow``: bounded range of remote events fetched per cycle.
- ``SyncAction``: enum of per-item decisions.
- ``SyncDecision``: one decision produced by the reconciler's diff.
- ``SyncResult`` / ``SyncReport``: outcome of one item / one cycle.

All models are frozen (immutable).  Timestamps are timezone-aware; naive
values are interpreted as UTC.
"""

from __future__ import annotations

import datetime as dt
import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator

_SLOT_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def ensure_aware(value: dt.datetime) -> dt.datetime:
    """Return *value* with UTC attached when it carries no tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class TimeSlot(BaseModel):
    """Time block within a day, ``HH:MM`` wall-clock strings."""

    start: str
    end: str

    model_config = {"frozen": True}

    @field_validator("start", "end")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if not _SLOT_PATTERN.match(value):
            raise ValueError(f"time slot value {value!r} is not HH:MM")
        return value


class TaskDraft(BaseModel):
    """Fields for a task that the local store has not created yet."""

    title: str
    date: dt.date | None = None
    end_date: dt.date | None = None
    time_slot: TimeSlot | None = None
    completed: bool = False
    notes: str | None = None
    color: str | None = None
    repeat_pattern: str | None = None
    project_id: str | None = None

    model_config = {"frozen": True}


class Task(TaskDraft):
    """A planner task owned by the local store.

    Attributes:
        id: Store-assigned identity.
        date: Scheduled day, or ``None`` for an unscheduled ("someday") task.
        project_id: Planner profile the task belongs to, if any.
        updated_at: Advances on every mutation made through the store.
    """

    id: str
    created_at: dt.datetime
    updated_at: dt.datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _aware(cls, value: dt.datetime) -> dt.datetime:
        return ensure_aware(value)


class EventDraft(BaseModel):
    """Outbound event body used for both create and update calls.

    ``end_date`` is inclusive here; the client converts all-day spans to
    the exclusive end date the API expects.
    """

    title: str
    description: str = ""
    start_date: dt.date
    end_date: dt.date | None = None
    time_slot: TimeSlot | None = None
    time_zone: str = "UTC"
    color_id: str | None = None
    recurrence: list[str] = Field(default_factory=list)
    source_task_id: str | None = None
    unscheduled: bool = False
    completed: bool = False

    model_config = {"frozen": True}


class RemoteEvent(BaseModel):
    """A calendar event as returned by the remote API.

    Attributes:
        remote_id: Event identity on the remote calendar.
        source_task_id: Task id from the private extension properties;
            ``None`` for events the user created on the calendar directly.
        updated: Server-side last-modified time.
    """

    remote_id: str
    title: str = ""
    description: str = ""
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    time_slot: TimeSlot | None = None
    status: str = "confirmed"
    color_id: str | None = None
    recurrence: list[str] = Field(default_factory=list)
    source_task_id: str | None = None
    unscheduled: bool = False
    completed: bool = False
    updated: dt.datetime

    model_config = {"frozen": True}

    @field_validator("updated")
    @classmethod
    def _aware(cls, value: dt.datetime) -> dt.datetime:
        return ensure_aware(value)

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


class SyncLink(BaseModel):
    """Persisted association between one task and one remote event.

    The two timestamps record what each side looked like at the last
    successful sync; a side whose current timestamp is newer has changed.
    """

    local_task_id: str
    remote_event_id: str
    last_synced_local_updated_at: dt.datetime
    last_synced_remote_updated_at: dt.datetime

    model_config = {"frozen": True}

    @field_validator(
        "last_synced_local_updated_at", "last_synced_remote_updated_at"
    )
    @classmethod
    def _aware(cls, value: dt.datetime) -> dt.datetime:
        return ensure_aware(value)


class TimeWindow(BaseModel):
    """Range of remote events listed in one cycle."""

    start: dt.datetime
    end: dt.datetime

    model_config = {"frozen": True}

    @classmethod
    def around(
        cls,
        now: dt.datetime,
        past_days: int = 30,
        future_days: int = 60,
    ) -> TimeWindow:
        """Window from *past_days* before *now* to *future_days* after."""
        now = ensure_aware(now)
        return cls(
            start=now - dt.timedelta(days=past_days),
            end=now + dt.timedelta(days=future_days),
        )


class SyncAction(str, Enum):
    """Per-item decisions taken by the reconciler."""

    SKIP = "skip"
    PUSH = "push"
    PULL = "pull"
    CONFLICT = "conflict"
    CREATE_REMOTE = "create_remote"
    CREATE_LOCAL = "create_local"
    ADOPT = "adopt"
    REHOME = "rehome"
    UNLINK = "unlink"
    DELETE_REMOTE = "delete_remote"


class SyncDecision(BaseModel):
    """One item of the reconciler's diff, applied later in order.

    Attributes:
        action: What to do.
        task: Local task involved, if any.
        event: Remote event involved, if any.
        link: Existing link, if any.
        reason: Short explanation for logs and reports.
    """

    action: SyncAction
    task: Task | None = None
    event: RemoteEvent | None = None
    link: SyncLink | None = None
    reason: str | None = None

    model_config = {"frozen": True}

    @property
    def task_id(self) -> str | None:
        if self.task is not None:
            return self.task.id
        if self.link is not None:
            return self.link.local_task_id
        return None

    @property
    def remote_event_id(self) -> str | None:
        if self.event is not None:
            return self.event.remote_id
        if self.link is not None:
            return self.link.remote_event_id
        return None

    @property
    def title(self) -> str:
        if self.task is not None:
            return self.task.title
        if self.event is not None:
            return self.event.title
        return ""


class SyncResult(BaseModel):
    """Result of applying one decision.

    Attributes:
        task_id: Local task id, if known.
        remote_event_id: Remote event id, if known.
        title: Task or event title for display.
        action: Decision that was applied.
        success: Whether the item was applied.
        error: Error message, or an informational note on success.
    """

    task_id: str | None = None
    remote_event_id: str | None = None
    title: str = ""
    action: SyncAction
    success: bool
    error: str | None = None

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for one reconciliation cycle.

    Attributes:
        calendar_id: Remote calendar that was synced.
        dry_run: Whether decisions were computed without applying them.
        results: Individual item results, in application order.
        started_at: ISO 8601 timestamp when the cycle started.
        completed_at: ISO 8601 timestamp when the cycle ended.
        aborted: True when the cycle stopped early (stop request or
            revoked credentials); results so far are kept.
        skipped_reason: Why the cycle did no work at all, if it didn't.
    """

    calendar_id: str
    dry_run: bool = False
    results: list[SyncResult] = []
    started_at: str
    completed_at: str | None = None
    aborted: bool = False
    skipped_reason: str | None = None

    model_config = {"frozen": True}

    def _with_action(self, action: SyncAction) -> list[SyncResult]:
        return [r for r in self.results if r.action == action]

    @property
    def created_local(self) -> list[SyncResult]:
        """Results where action is CREATE_LOCAL."""
        return self._with_action(SyncAction.CREATE_LOCAL)

    @property
    def created_remote(self) -> list[SyncResult]:
        """Results where action is CREATE_REMOTE."""
        return self._with_action(SyncAction.CREATE_REMOTE)

    @property
    def updated_local(self) -> list[SyncResult]:
        """Results where action is PULL."""
        return self._with_action(SyncAction.PULL)

    @property
    def updated_remote(self) -> list[SyncResult]:
        """Results where action is PUSH."""
        return self._with_action(SyncAction.PUSH)

    @property
    def conflicts(self) -> list[SyncResult]:
        """Results where both sides changed and local won."""
        return self._with_action(SyncAction.CONFLICT)

    @property
    def adopted(self) -> list[SyncResult]:
        return self._with_action(SyncAction.ADOPT)

    @property
    def rehomed(self) -> list[SyncResult]:
        """Linked tasks moved to the import profile."""
        return self._with_action(SyncAction.REHOME)

    @property
    def unlinked(self) -> list[SyncResult]:
        return [
            r
            for r in self.results
            if r.action in (SyncAction.UNLINK, SyncAction.DELETE_REMOTE)
        ]

    @property
    def skipped(self) -> list[SyncResult]:
        """Results where action is SKIP."""
        return self._with_action(SyncAction.SKIP)

    @property
    def errors(self) -> list[SyncResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    @property
    def mutations(self) -> int:
        """Number of successful results that changed either side."""
        return sum(
            1
            for r in self.results
            if r.success
            and r.action not in (SyncAction.SKIP, SyncAction.UNLINK)
        )

    def summary(self) -> str:
        """Format a human-readable summary of the cycle.

        Returns:
            Multi-line summary string with counts by action.
        """
        header = f"Sync report for calendar '{self.calendar_id}'"
        if self.dry_run:
            header += " (dry run)"
        if self.skipped_reason:
            return f"{header}\n  Skipped: {self.skipped_reason}"
        lines = [
            header,
            f"  Created local:  {len(self.created_local)}",
            f"  Created remote: {len(self.created_remote)}",
            f"  Updated local:  {len(self.updated_local)}",
            f"  Updated remote: {len(self.updated_remote)}",
            f"  Conflicts:      {len(self.conflicts)}",
            f"  Adopted:        {len(self.adopted)}",
            f"  Re-homed:       {len(self.rehomed)}",
            f"  Unlinked:       {len(self.unlinked)}",
            f"  Skipped:        {len(self.skipped)}",
            f"  Errors:         {len(self.errors)}",
            f"  Total:          {len(self.results)}",
        ]
        if self.aborted:
            lines.append("  (aborted before completion)")
        return "\n".join(lines)
