"""SyncLink table: the engine's durable task/event association.

``LinkTable`` keeps two indexes so the 1:1 invariant (one link per task
id and one per event id) holds after every mutation: upserting a link
evicts any older link that shares either id.

It also remembers tasks whose event was deleted on the calendar
("detached" tasks), with the task's ``updated_at`` at that moment.  A
detached task is not pushed again until it is edited locally.

``LinkStore`` loads and saves the table as sections of the settings
document.  The reconciler saves after every change so a crash mid-cycle
loses at most the item in progress.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, Iterator

from pydantic import ValidationError

from ..state import SettingsBackend, read_section
from .models import SyncLink, ensure_aware

logger = logging.getLogger(__name__)

LINKS_KEY = "sync_links"
DETACHED_KEY = "sync_detached"


class LinkTable:
    """In-memory SyncLink table with task and event indexes."""

    def __init__(
        self,
        links: list[SyncLink] | None = None,
        detached: dict[str, dt.datetime] | None = None,
    ) -> None:
        self._by_task: dict[str, SyncLink] = {}
        self._by_event: dict[str, SyncLink] = {}
        self._detached: dict[str, dt.datetime] = dict(detached or {})
        for link in links or []:
            self.upsert(link)

    def __len__(self) -> int:
        return len(self._by_task)

    def __iter__(self) -> Iterator[SyncLink]:
        return iter(list(self._by_task.values()))

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._by_task

    def by_task(self, task_id: str) -> SyncLink | None:
        return self._by_task.get(task_id)

    def by_event(self, remote_event_id: str) -> SyncLink | None:
        return self._by_event.get(remote_event_id)

    def upsert(self, link: SyncLink) -> None:
        """Insert or replace *link*, evicting links that share an id."""
        old_for_task = self._by_task.get(link.local_task_id)
        if old_for_task is not None:
            self._by_event.pop(old_for_task.remote_event_id, None)
        old_for_event = self._by_event.get(link.remote_event_id)
        if old_for_event is not None:
            self._by_task.pop(old_for_event.local_task_id, None)
        self._by_task[link.local_task_id] = link
        self._by_event[link.remote_event_id] = link
        self._detached.pop(link.local_task_id, None)

    def remove(self, task_id: str) -> SyncLink | None:
        """Drop the link for *task_id*; returns it if it existed."""
        link = self._by_task.pop(task_id, None)
        if link is not None:
            self._by_event.pop(link.remote_event_id, None)
        return link

    def detach(self, task_id: str, local_updated_at: dt.datetime) -> None:
        """Drop the link and mark the task as deleted on the calendar."""
        self.remove(task_id)
        self._detached[task_id] = ensure_aware(local_updated_at)

    def detached_at(self, task_id: str) -> dt.datetime | None:
        return self._detached.get(task_id)

    def prune_detached(self, existing_task_ids: Iterable[str]) -> bool:
        """Forget detached marks of tasks that no longer exist."""
        keep = set(existing_task_ids)
        stale = [t for t in self._detached if t not in keep]
        for task_id in stale:
            del self._detached[task_id]
        return bool(stale)

    def clear(self) -> None:
        self._by_task.clear()
        self._by_event.clear()
        self._detached.clear()

    def to_json(self) -> list[dict]:
        return [
            link.model_dump(mode="json")
            for link in sorted(
                self._by_task.values(), key=lambda l: l.local_task_id
            )
        ]

    def detached_to_json(self) -> dict[str, str]:
        return {
            task_id: when.isoformat()
            for task_id, when in sorted(self._detached.items())
        }


class LinkStore:
    """Persist a ``LinkTable`` in the settings document."""

    def __init__(self, backend: SettingsBackend) -> None:
        self._backend = backend

    def load(self) -> LinkTable:
        """Load the table; malformed rows are dropped with a warning."""
        raw = read_section(self._backend, LINKS_KEY) or []
        links: list[SyncLink] = []
        for row in raw:
            try:
                links.append(SyncLink.model_validate(row))
            except ValidationError as exc:
                logger.warning("Dropping malformed sync link %r: %s", row, exc)

        detached: dict[str, dt.datetime] = {}
        for task_id, when in (
            read_section(self._backend, DETACHED_KEY) or {}
        ).items():
            try:
                detached[task_id] = ensure_aware(dt.datetime.fromisoformat(when))
            except (TypeError, ValueError):
                logger.warning("Dropping malformed detached mark for %s", task_id)
        return LinkTable(links, detached)

    def save(self, table: LinkTable) -> None:
        data = self._backend.load()
        data[LINKS_KEY] = table.to_json()
        detached = table.detached_to_json()
        if detached:
            data[DETACHED_KEY] = detached
        else:
            data.pop(DETACHED_KEY, None)
        self._backend.save(data)

    def clear(self) -> None:
        data = self._backend.load()
        data.pop(LINKS_KEY, None)
        data.pop(DETACHED_KEY, None)
        self._backend.save(data)
        logger.info("Cleared sync link table")
