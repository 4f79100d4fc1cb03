"""Tests for SyncScheduler -- cycle lifecycle, guards and disconnect."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import threading

import pytest

from aerotodo_sync.auth import CredentialStore, TokenRefresher
from aerotodo_sync.errors import AuthRevokedError, AuthTransientError
from aerotodo_sync.sync.engine import Reconciler
from aerotodo_sync.sync.links import LinkStore
from aerotodo_sync.sync.models import SyncReport
from aerotodo_sync.sync.policy import PolicyStore, SyncPolicy
from aerotodo_sync.sync.scheduler import SyncScheduler, disconnect

JUNE_1 = dt.date(2024, 6, 1)


@pytest.fixture
def policy_store(settings):
    return PolicyStore(settings)


@pytest.fixture
def link_store(settings):
    return LinkStore(settings)


@pytest.fixture
def reconciler(calendar, credentials, token_endpoint, link_store, clock):
    refresher = TokenRefresher(credentials, token_endpoint, clock=clock)
    return Reconciler(calendar, refresher, link_store, clock=clock)


@pytest.fixture
def scheduler(reconciler, credentials, policy_store):
    return SyncScheduler(reconciler, credentials, policy_store, interval=3600)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class BlockingReconciler:
    """Reconciler stand-in whose cycle runs until released."""

    def __init__(self, calendar, link_store):
        self.client = calendar
        self.link_store = link_store
        self.release = asyncio.Event()
        self.calls = 0
        self.saw_stop = None

    async def reconcile(
        self, tasks, policy, store, bundle=None, should_stop=None, dry_run=False
    ):
        self.calls += 1
        await self.release.wait()
        self.saw_stop = should_stop() if should_stop else False
        return SyncReport(
            calendar_id="primary",
            started_at="2024-06-01T00:00:00+00:00",
            completed_at="2024-06-01T00:00:01+00:00",
            aborted=self.saw_stop,
        )


# ---------------------------------------------------------------------------
# run_cycle()
# ---------------------------------------------------------------------------


class TestRunCycle:
    async def test_cycle_syncs_and_records_status(
        self, scheduler, task_store, calendar, policy_store
    ):
        task_store.seed("Dentist", date=JUNE_1)

        report = await scheduler.run_cycle(task_store)

        assert len(report.created_remote) == 1
        assert len(calendar.events) == 1
        status = policy_store.status()
        assert status["last_sync_at"] == report.completed_at
        assert status["last_error"] is None
        assert scheduler.last_report is report

    async def test_disabled_policy_skips_cycle(
        self, scheduler, task_store, calendar, policy_store
    ):
        policy_store.save(SyncPolicy(enabled=False))
        task_store.seed("Dentist", date=JUNE_1)

        report = await scheduler.run_cycle(task_store)

        assert report.skipped_reason == "sync disabled"
        assert calendar.calls == []

    async def test_cycle_log_names_cycle_and_calendar(
        self, scheduler, task_store, caplog
    ):
        task_store.seed("Dentist", date=JUNE_1)

        with caplog.at_level(logging.INFO, logger="aerotodo_sync.sync.scheduler"):
            await scheduler.run_cycle(task_store)

        (done,) = [
            r for r in caplog.records if r.getMessage().startswith("Sync cycle done")
        ]
        assert done.cycle == 1
        assert done.calendar == "primary"

    async def test_missing_credentials_skip_cycle(

        self, scheduler, task_store, calendar, credentials
    ):
        credentials.clear()

        report = await scheduler.run_cycle(task_store)

        assert "not connected" in report.skipped_reason
        assert calendar.calls == []

    async def test_revoked_grant_clears_credentials_and_disables(
        self,
        scheduler,
        task_store,
        calendar,
        credentials,
        policy_store,
        token_endpoint,
        clock,
    ):
        task_store.seed("Dentist", date=JUNE_1)
        clock.advance(hours=2)
        token_endpoint.error = AuthRevokedError("invalid_grant")

        report = await scheduler.run_cycle(task_store)

        assert "revoked" in report.skipped_reason
        assert credentials.get() is None
        assert policy_store.load().enabled is False
        assert calendar.calls == []
        assert token_endpoint.calls == ["refresh-0"]

        again = await scheduler.run_cycle(task_store)
        assert again.skipped_reason == "sync disabled"
        assert token_endpoint.calls == ["refresh-0"]

    async def test_transient_refresh_failure_retries_once_then_skips(
        self, scheduler, task_store, calendar, credentials, token_endpoint, clock
    ):
        clock.advance(hours=2)
        token_endpoint.error = AuthTransientError("503 from token endpoint")

        report = await scheduler.run_cycle(task_store)

        assert report.skipped_reason.startswith("authentication failed")
        assert len(token_endpoint.calls) == 2
        assert credentials.get() is not None
        assert calendar.calls == []

    async def test_dry_run_does_not_record_status(
        self, scheduler, task_store, policy_store
    ):
        task_store.seed("Dentist", date=JUNE_1)

        await scheduler.run_cycle(task_store, dry_run=True)

        assert policy_store.status()["last_sync_at"] is None


# ---------------------------------------------------------------------------
# start() / stop()
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_triggers_immediate_cycle(
        self, scheduler, task_store, calendar
    ):
        task_store.seed("Dentist", date=JUNE_1)

        scheduler.start(
            task_store.get_tasks, task_store.update_task, task_store.add_task
        )
        await _wait_for(lambda: scheduler.last_report is not None)
        scheduler.stop()
        await scheduler.join()

        assert len(calendar.events) == 1
        assert scheduler.started is False

    async def test_overlapping_tick_is_dropped(
        self, calendar, link_store, credentials, policy_store, task_store
    ):
        stub = BlockingReconciler(calendar, link_store)
        scheduler = SyncScheduler(stub, credentials, policy_store, interval=3600)

        scheduler.start_with_store(task_store)
        await _wait_for(lambda: stub.calls == 1)
        scheduler._tick()

        assert scheduler.dropped_ticks == 1
        assert stub.calls == 1

        stub.release.set()
        scheduler.stop()
        await scheduler.join()

    async def test_manual_cycle_waits_for_running_cycle(
        self, scheduler, task_store, calendar, link_store
    ):
        task_store.seed("Dentist", date=JUNE_1)
        entered = threading.Event()
        release = threading.Event()
        create_event = calendar.create_event

        def slow_create(draft, access_token):
            entered.set()
            release.wait(timeout=5)
            return create_event(draft, access_token)

        calendar.create_event = slow_create
        scheduler.start_with_store(task_store)
        await _wait_for(entered.is_set)

        manual = asyncio.ensure_future(scheduler.run_cycle())
        await asyncio.sleep(0.05)
        assert not manual.done()

        release.set()
        report = await manual
        scheduler.stop()
        await scheduler.join()

        assert len(calendar.events) == 1
        assert len(link_store.load()) == 1
        assert report.created_remote == []
        assert scheduler.cycles_run == 2

    async def test_tick_during_manual_cycle_is_dropped(
        self, calendar, link_store, credentials, policy_store, task_store
    ):
        stub = BlockingReconciler(calendar, link_store)
        scheduler = SyncScheduler(stub, credentials, policy_store, interval=3600)

        manual = asyncio.ensure_future(scheduler.run_cycle(task_store))
        await _wait_for(lambda: stub.calls == 1)
        scheduler._tick()
        stub.release.set()
        await manual

        assert scheduler.dropped_ticks == 1
        assert stub.calls == 1

    async def test_stop_reaches_running_cycle(
        self, calendar, link_store, credentials, policy_store, task_store
    ):
        stub = BlockingReconciler(calendar, link_store)
        scheduler = SyncScheduler(stub, credentials, policy_store, interval=3600)
        scheduler.start_with_store(task_store)
        await _wait_for(lambda: scheduler.running)

        scheduler.stop()
        stub.release.set()
        await scheduler.join()

        assert stub.saw_stop is True
        assert scheduler.last_report.aborted is True

    async def test_restart_after_stop_resumes_from_links(
        self, scheduler, task_store, calendar
    ):
        task_store.seed("Dentist", date=JUNE_1)
        scheduler.start_with_store(task_store)
        await _wait_for(lambda: scheduler.cycles_run == 1 and not scheduler.running)
        scheduler.stop()
        await scheduler.join()

        scheduler.start_with_store(task_store)
        await _wait_for(lambda: scheduler.cycles_run == 2 and not scheduler.running)
        scheduler.stop()
        await scheduler.join()

        assert len(calendar.events) == 1
        assert scheduler.last_report.mutations == 0

    async def test_second_start_is_noop(
        self, calendar, link_store, credentials, policy_store, task_store
    ):
        stub = BlockingReconciler(calendar, link_store)
        scheduler = SyncScheduler(stub, credentials, policy_store, interval=3600)
        scheduler.start_with_store(task_store)
        await _wait_for(lambda: stub.calls == 1)

        scheduler.start_with_store(task_store)
        await asyncio.sleep(0.02)

        assert stub.calls == 1
        stub.release.set()
        scheduler.stop()
        await scheduler.join()


# ---------------------------------------------------------------------------
# disconnect()
# ---------------------------------------------------------------------------


class TestDisconnect:
    async def test_disconnect_clears_everything(
        self, scheduler, task_store, credentials, policy_store, link_store
    ):
        task_store.seed("Dentist", date=JUNE_1)
        await scheduler.run_cycle(task_store)
        assert len(link_store.load()) == 1

        await scheduler.disconnect()

        assert credentials.get() is None
        assert policy_store.load().enabled is False
        assert policy_store.status()["disabled_reason"] == "disconnected"
        assert len(link_store.load()) == 0

    def test_disconnect_can_keep_links(self, settings, link_store):
        from aerotodo_sync.sync.links import LinkTable
        from aerotodo_sync.sync.models import SyncLink

        now = dt.datetime(2024, 6, 1, tzinfo=dt.timezone.utc)
        link_store.save(
            LinkTable(
                [
                    SyncLink(
                        local_task_id="t1",
                        remote_event_id="e1",
                        last_synced_local_updated_at=now,
                        last_synced_remote_updated_at=now,
                    )
                ]
            )
        )

        disconnect(
            CredentialStore(settings),
            PolicyStore(settings),
            link_store,
            clear_links=False,
        )

        assert len(link_store.load()) == 1
        assert PolicyStore(settings).load().enabled is False
