"""Two-way task/calendar sync engine.

Keeps the planner's local tasks consistent with a Google calendar.

Architecture
------------
Change detection is timestamp based.  Each ``SyncLink`` records the
task's ``updated_at`` and the event's ``updated`` as of the last sync;
each side is compared only against its own recorded timestamp.  When
both sides changed, the local task wins.

Modules:

- ``models``    -- ``Task``, ``RemoteEvent``, ``SyncLink``, ``SyncAction``,
  ``SyncResult``, ``SyncReport``: core data contracts.
- ``policy``    -- ``SyncPolicy``, ``PolicyStore``: scope rules and the
  persisted connection status.
- ``links``     -- ``LinkTable``, ``LinkStore``: the 1:1 link table.
- ``mapper``    -- task <-> event field mapping.
- ``ports``     -- ``LocalTaskStore``: the local store collaborator and
  ``JsonTaskStore``, a file-backed one.
- ``engine``    -- ``Reconciler``: diff and apply one cycle.
- ``scheduler`` -- ``SyncScheduler``: recurring, non-overlapping cycles.
- ``reporter``  -- human-readable and JSON report formatting.

Usage example
-------------
::

    from aerotodo_sync.lifespan import sync_lifespan

    async with sync_lifespan() as ctx:
        scheduler = ctx["scheduler"]
        scheduler.start(app.get_tasks, app.update_task, app.add_task)
        ...
"""

from .models import (
    RemoteEvent,
    SyncAction,
    SyncDecision,
    SyncLink,
    SyncReport,
    SyncResult,
    Task,
    TaskDraft,
    TimeWindow,
)
from .policy import PolicyStore, SyncPolicy
from .links import LinkStore, LinkTable
from .ports import CallbackTaskStore, JsonTaskStore, LocalTaskStore
from .engine import Reconciler
from .scheduler import SyncScheduler, disconnect
from .reporter import (
    format_dry_run_preview,
    format_sync_report,
    report_to_json,
)

__all__ = [
    "CallbackTaskStore",
    "JsonTaskStore",
    "LinkStore",
    "LinkTable",
    "LocalTaskStore",
    "PolicyStore",
    "Reconciler",
    "RemoteEvent",
    "SyncAction",
    "SyncDecision",
    "SyncLink",
    "SyncPolicy",
    "SyncReport",
    "SyncResult",
    "SyncScheduler",
    "Task",
    "TaskDraft",
    "TimeWindow",
    "disconnect",
    "format_dry_run_preview",
    "format_sync_report",
    "report_to_json",
]
