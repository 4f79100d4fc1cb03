"""Shared pytest fixtures and in-memory fakes for aerotodo-sync tests."""

from __future__ import annotations

import datetime as dt
import itertools
from typing import Any, Optional

import pytest

from aerotodo_sync.auth import CredentialBundle, CredentialStore
from aerotodo_sync.config import Config
from aerotodo_sync.core.client import draft_to_api, event_from_api
from aerotodo_sync.errors import RemoteNotFoundError
from aerotodo_sync.state import MemorySettingsStore
from aerotodo_sync.sync.models import (
    EventDraft,
    RemoteEvent,
    Task,
    TaskDraft,
    TimeWindow,
)

T0 = dt.datetime(2024, 6, 1, 9, 0, tzinfo=dt.timezone.utc)


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live Google account",
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: dt.datetime = T0) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


class FakeTaskStore:
    """In-memory ``LocalTaskStore``; every mutation advances ``updated_at``."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.tasks: dict[str, Task] = {}
        self.added: list[Task] = []
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self._ids = itertools.count(1)

    def _tick(self) -> dt.datetime:
        return self.clock.advance(seconds=1)

    def seed(self, title: str, **fields: Any) -> Task:
        now = self._tick()
        task = Task(
            id=fields.pop("id", f"task-{next(self._ids)}"),
            title=title,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.tasks[task.id] = task
        return task

    def edit(self, task_id: str, **fields: Any) -> Task:
        """Simulate a user edit in the planner."""
        task = self.tasks[task_id].model_copy(
            update={**fields, "updated_at": self._tick()}
        )
        self.tasks[task_id] = task
        return task

    def delete(self, task_id: str) -> None:
        del self.tasks[task_id]

    # LocalTaskStore

    def get_tasks(self) -> list[Task]:
        return list(self.tasks.values())

    def add_task(self, draft: TaskDraft) -> Task:
        now = self._tick()
        task = Task(
            id=f"task-{next(self._ids)}",
            created_at=now,
            updated_at=now,
            **draft.model_dump(),
        )
        self.tasks[task.id] = task
        self.added.append(task)
        return task

    def update_task(self, task_id: str, changes: dict[str, Any]) -> None:
        self.updates.append((task_id, changes))
        self.tasks[task_id] = self.tasks[task_id].model_copy(
            update={**changes, "updated_at": self._tick()}
        )


class FakeCalendarClient:
    """In-memory calendar that round-trips bodies through the wire format.

    Every write advances the event's ``updated`` timestamp, as the real
    API does.
    """

    calendar_id = "primary"

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.events: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.tokens: list[str] = []
        self.fail: dict[str, Exception] = {}
        self.hidden: set[str] = set()
        self._ids = itertools.count(1)

    @property
    def mutations(self) -> list[tuple[str, Any]]:
        return [
            c for c in self.calls if c[0] in ("create", "update", "tag", "delete")
        ]

    def _stamp(self) -> str:
        return self.clock.advance(seconds=1).isoformat()

    def _check(self, op: str, token: str) -> None:
        self.tokens.append(token)
        exc = self.fail.pop(op, None)
        if exc is not None:
            raise exc

    def seed(self, title: str, date: str, **extra: Any) -> RemoteEvent:
        """Simulate an event the user created directly on the calendar."""
        remote_id = f"evt-{next(self._ids)}"
        day = dt.date.fromisoformat(date)
        item = {
            "id": remote_id,
            "summary": title,
            "status": "confirmed",
            "start": {"date": day.isoformat()},
            "end": {"date": (day + dt.timedelta(days=1)).isoformat()},
            "updated": self._stamp(),
            **extra,
        }
        self.events[remote_id] = item
        return event_from_api(item)

    def edit(self, remote_id: str, **fields: Any) -> RemoteEvent:
        """Simulate a user edit on the calendar."""
        item = self.events[remote_id]
        item.update(fields)
        item["updated"] = self._stamp()
        return event_from_api(item)

    def list_events(self, window: TimeWindow, access_token: str) -> list[RemoteEvent]:
        self.calls.append(("list", window))
        self._check("list", access_token)
        return [
            event_from_api(item)
            for remote_id, item in self.events.items()
            if remote_id not in self.hidden
        ]

    def get_event(self, remote_id: str, access_token: str) -> RemoteEvent:
        self.calls.append(("get", remote_id))
        self._check("get", access_token)
        if remote_id not in self.events:
            raise RemoteNotFoundError(f"{remote_id} not found", status_code=404)
        return event_from_api(self.events[remote_id])

    def create_event(self, draft: EventDraft, access_token: str) -> RemoteEvent:
        self.calls.append(("create", draft))
        self._check("create", access_token)
        remote_id = f"evt-{next(self._ids)}"
        item = {
            "id": remote_id,
            "status": "confirmed",
            "updated": self._stamp(),
            **draft_to_api(draft),
        }
        self.events[remote_id] = item
        return event_from_api(item)

    def update_event(
        self, remote_id: str, patch: EventDraft, access_token: str
    ) -> RemoteEvent:
        self.calls.append(("update", (remote_id, patch)))
        self._check("update", access_token)
        if remote_id not in self.events:
            raise RemoteNotFoundError(f"{remote_id} not found", status_code=404)
        item = self.events[remote_id]
        item.update(draft_to_api(patch))
        item["updated"] = self._stamp()
        return event_from_api(item)

    def tag_event(
        self, remote_id: str, source_task_id: str, access_token: str
    ) -> RemoteEvent:
        self.calls.append(("tag", (remote_id, source_task_id)))
        self._check("tag", access_token)
        item = self.events[remote_id]
        props = item.setdefault("extendedProperties", {}).setdefault(
            "private", {}
        )
        props["sourceTaskId"] = source_task_id
        item["updated"] = self._stamp()
        return event_from_api(item)

    def delete_event(self, remote_id: str, access_token: str) -> None:
        self.calls.append(("delete", remote_id))
        self._check("delete", access_token)
        self.events.pop(remote_id, None)


class FakeTokenEndpoint:
    """Token endpoint stand-in counting refresh calls."""

    def __init__(self, expires_in: int = 3600) -> None:
        self.expires_in = expires_in
        self.calls: list[str] = []
        self.error: Optional[Exception] = None

    def refresh(self, refresh_token: str):
        from aerotodo_sync.core.oauth import TokenResponse

        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return TokenResponse(
            access_token=f"access-{len(self.calls)}",
            expires_in=self.expires_in,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return MemorySettingsStore()


@pytest.fixture
def task_store(clock):
    return FakeTaskStore(clock)


@pytest.fixture
def calendar(clock):
    return FakeCalendarClient(clock)


@pytest.fixture
def token_endpoint():
    return FakeTokenEndpoint()


@pytest.fixture
def bundle(clock):
    """A bundle valid for one hour from the fake clock's start."""
    return CredentialBundle(
        access_token="access-0",
        refresh_token="refresh-0",
        expires_at=clock() + dt.timedelta(hours=1),
    )


@pytest.fixture
def credentials(settings, bundle):
    store = CredentialStore(settings)
    store.set(bundle)
    return store


@pytest.fixture
def mock_config():
    """Create a Config instance for testing."""
    return Config(
        client_id="client-id",
        client_secret="client-secret",
        token_url="https://oauth.example.com/token",
        api_base="https://calendar.example.com/v3",
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=5.0,
    )
