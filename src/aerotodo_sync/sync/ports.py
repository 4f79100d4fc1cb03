"""Local task store port.

The engine never owns tasks.  It reads immutable snapshots and requests
mutations through this interface, so the core can run against an
in-memory fake as easily as against the planner's real store.
``JsonTaskStore`` keeps tasks in a JSON file for command-line use.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Callable, Iterable, Protocol

from ..state import SettingsBackend, read_section, write_section
from .models import Task, TaskDraft, utcnow


class LocalTaskStore(Protocol):
    """Collaborator contract supplied by the host application."""

    def get_tasks(self) -> Iterable[Task]:
        """Return the current tasks; must have no side effects."""
        ...  # pragma: no cover

    def add_task(self, draft: TaskDraft) -> Task:
        """Create a task and return it with its assigned id and timestamps."""
        ...  # pragma: no cover

    def update_task(self, task_id: str, changes: dict[str, Any]) -> None:
        """Apply a partial update; must advance ``updated_at``."""
        ...  # pragma: no cover


class CallbackTaskStore:
    """Adapt three plain callables to ``LocalTaskStore``.

    Lets a host wire in its existing accessor functions without writing a
    class::

        store = CallbackTaskStore(app.tasks, app.add_task, app.update_task)
    """

    def __init__(
        self,
        get_tasks: Callable[[], Iterable[Task]],
        add_task: Callable[[TaskDraft], Task],
        update_task: Callable[[str, dict[str, Any]], None],
    ) -> None:
        self._get_tasks = get_tasks
        self._add_task = add_task
        self._update_task = update_task

    def get_tasks(self) -> Iterable[Task]:
        return self._get_tasks()

    def add_task(self, draft: TaskDraft) -> Task:
        return self._add_task(draft)

    def update_task(self, task_id: str, changes: dict[str, Any]) -> None:
        self._update_task(task_id, changes)


class JsonTaskStore:
    """``LocalTaskStore`` kept in a JSON document under the ``tasks`` key.

    Used by the command line, which has no planner process to talk to.
    The document goes through a ``SettingsBackend``, so writes are atomic
    the same way the settings file's are.
    """

    SECTION = "tasks"

    def __init__(
        self,
        backend: SettingsBackend,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self._clock = clock

    def _load(self) -> dict[str, Task]:
        raw = read_section(self._backend, self.SECTION) or []
        tasks = [Task.model_validate(item) for item in raw]
        return {task.id: task for task in tasks}

    def _save(self, tasks: dict[str, Task]) -> None:
        write_section(
            self._backend,
            self.SECTION,
            [task.model_dump(mode="json") for task in tasks.values()],
        )

    def _stamp(self, previous: dt.datetime | None = None) -> dt.datetime:
        # Strictly increasing even when the clock has not moved
        now = self._clock()
        if previous is not None and now <= previous:
            return previous + dt.timedelta(microseconds=1)
        return now

    def get_tasks(self) -> list[Task]:
        return list(self._load().values())

    def add_task(self, draft: TaskDraft) -> Task:
        tasks = self._load()
        now = self._stamp()
        task = Task(
            id=uuid.uuid4().hex,
            created_at=now,
            updated_at=now,
            **draft.model_dump(),
        )
        tasks[task.id] = task
        self._save(tasks)
        return task

    def update_task(self, task_id: str, changes: dict[str, Any]) -> None:
        """Apply *changes*.

        Raises:
            KeyError: No task has *task_id*.
        """
        tasks = self._load()
        current = tasks[task_id]
        tasks[task_id] = Task.model_validate(
            {
                **current.model_dump(),
                **changes,
                "id": current.id,
                "updated_at": self._stamp(current.updated_at),
            }
        )
        self._save(tasks)
