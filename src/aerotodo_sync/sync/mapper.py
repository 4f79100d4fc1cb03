"""Mapping between planner tasks and calendar events.

Pure functions, no I/O.  ``task_to_draft`` builds the outbound event body
for a task; ``event_to_task_fields`` builds the partial update applied to
a linked task on pull; ``event_to_task_draft`` builds the draft for a
task created from a remote event.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

from .models import EventDraft, RemoteEvent, Task, TaskDraft

UNTITLED = "Untitled Event"

COLOR_IDS: dict[str, str] = {
    "blue": "1",
    "green": "2",
    "purple": "3",
    "red": "4",
    "yellow": "5",
    "orange": "6",
    "teal": "7",
    "gray": "8",
    "pink": "9",
}
COLOR_NAMES: dict[str, str] = {v: k for k, v in COLOR_IDS.items()}

REPEAT_RULES: dict[str, str] = {
    "daily": "RRULE:FREQ=DAILY",
    "weekly": "RRULE:FREQ=WEEKLY",
    "monthly": "RRULE:FREQ=MONTHLY",
    "yearly": "RRULE:FREQ=YEARLY",
}


def task_to_draft(task: Task, today: dt.date, time_zone: str = "UTC") -> EventDraft:
    """Build the event body for *task*.

    Unscheduled tasks are placed as all-day events on *today* and tagged
    so a later pull keeps them unscheduled.
    """
    unscheduled = task.date is None
    start = task.date or today
    end = task.end_date if task.end_date and task.end_date > start else None
    rule = REPEAT_RULES.get((task.repeat_pattern or "").lower())
    return EventDraft(
        title=task.title,
        description=task.notes or "",
        start_date=start,
        end_date=end,
        time_slot=None if unscheduled else task.time_slot,
        time_zone=time_zone,
        color_id=COLOR_IDS.get((task.color or "").lower()),
        recurrence=[rule] if rule else [],
        source_task_id=task.id,
        unscheduled=unscheduled,
        completed=task.completed,
    )


def repeat_from_recurrence(recurrence: list[str]) -> str | None:
    """Return the planner repeat pattern for the first matching RRULE."""
    for line in recurrence:
        upper = line.upper()
        if not upper.startswith("RRULE:"):
            continue
        for part in upper[len("RRULE:"):].split(";"):
            if part.startswith("FREQ="):
                freq = part[len("FREQ="):].lower()
                if freq in REPEAT_RULES:
                    return freq
    return None


def event_to_task_fields(
    event: RemoteEvent, project_id: str | None = None
) -> dict[str, Any]:
    """Partial task update carrying the event's synced fields.

    *project_id*, when given, assigns the task to that planner profile;
    otherwise the task's profile is left alone.
    """
    unscheduled = event.unscheduled or event.start_date is None
    fields: dict[str, Any] = {
        "title": event.title or UNTITLED,
        "notes": event.description or None,
        "date": None if unscheduled else event.start_date,
        "end_date": None if unscheduled else event.end_date,
        "time_slot": None if unscheduled else event.time_slot,
        "color": COLOR_NAMES.get(event.color_id or ""),
        "repeat_pattern": repeat_from_recurrence(event.recurrence),
        "completed": event.completed,
    }
    if project_id:
        fields["project_id"] = project_id
    return fields


def event_to_task_draft(
    event: RemoteEvent, project_id: str | None = None
) -> TaskDraft:
    return TaskDraft(**event_to_task_fields(event, project_id))


def match_key(
    title: str, date: dt.date | None, slot_start: str | None
) -> tuple[str, str, str]:
    """Key used to recognise a remote event as an existing local task."""
    return (
        title.strip().casefold(),
        date.isoformat() if date else "",
        slot_start or "",
    )


def task_match_key(task: Task) -> tuple[str, str, str]:
    return match_key(
        task.title, task.date, task.time_slot.start if task.time_slot else None
    )


def event_match_key(event: RemoteEvent) -> tuple[str, str, str]:
    return match_key(
        event.title or UNTITLED,
        event.start_date,
        event.time_slot.start if event.time_slot else None,
    )
