"""Recurring, non-overlapping reconciliation cycles.

``SyncScheduler`` owns the timer, the stop flag and the in-flight cycle
for one connected user.  There is no module-level state: two schedulers
in one process do not interfere.

States: idle -> running -> idle on every tick, with an orthogonal stopped
flag.  Cycles never overlap: a tick that arrives while a cycle is
running is dropped, not queued, and a manual ``run_cycle()`` waits for
the running cycle to finish first.  ``stop()`` cancels the timer and raises the flag; a running
cycle notices it between steps and ends with ``aborted`` set.

Each cycle:

1. Reads the policy; a disabled policy skips the cycle.
2. Reads the credentials; missing credentials skip the cycle.
3. Takes an immutable snapshot of the local tasks.
4. Runs ``Reconciler.reconcile()``.
5. Records the last sync time and last error.

A revoked grant disables the policy (the refresher already cleared the
credentials) and no further remote calls are made in that cycle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable

from ..errors import AuthRevokedError, AuthTransientError, ConfigError
from ..logger import cycle_logger
from .links import LinkStore
from .models import SyncReport, Task, TaskDraft, utcnow
from .policy import PolicyStore
from .ports import CallbackTaskStore, LocalTaskStore

if TYPE_CHECKING:
    from ..auth.credentials import CredentialStore
    from .engine import Reconciler

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60.0


class SyncScheduler:
    """Drive reconciliation cycles on a fixed interval.

    Args:
        reconciler: Runs one cycle.
        credentials: Credential store consulted before each cycle.
        policy_store: Policy and connection status.
        interval: Seconds between ticks.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        credentials: CredentialStore,
        policy_store: PolicyStore,
        interval: float = DEFAULT_INTERVAL,
    ) -> None:
        self.reconciler = reconciler
        self.credentials = credentials
        self.policy_store = policy_store
        self.interval = interval
        self.store: LocalTaskStore | None = None
        self.last_report: SyncReport | None = None
        self.cycles_run = 0
        self.dropped_ticks = 0
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._timer: asyncio.Task[None] | None = None
        self._cycle: asyncio.Task[SyncReport] | None = None
        self._cycle_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return not self._stopped.is_set()

    @property
    def running(self) -> bool:
        """Whether a cycle is in progress."""
        if self._cycle_lock.locked():
            return True
        return self._cycle is not None and not self._cycle.done()

    def start(
        self,
        get_tasks: Callable[[], Iterable[Task]],
        on_update_task: Callable[[str, dict[str, Any]], None],
        on_create_task: Callable[[TaskDraft], Task],
    ) -> None:
        """Arm the timer and trigger one cycle immediately.

        Must be called from a running event loop.  Calling ``start()``
        while already started is a no-op.
        """
        self.start_with_store(
            CallbackTaskStore(get_tasks, on_create_task, on_update_task)
        )

    def start_with_store(self, store: LocalTaskStore) -> None:
        """Same as ``start()`` with a ready-made local store."""
        if self.started:
            logger.debug("Scheduler already started")
            return
        self.store = store
        self._stopped.clear()
        self._timer = asyncio.create_task(self._run_timer())
        logger.info("Sync scheduler started (interval %.0fs)", self.interval)

    def stop(self) -> None:
        """Cancel the timer and ask a running cycle to end between steps."""
        if not self.started:
            return
        self._stopped.set()
        if self._timer is not None:
            self._timer.cancel()
        logger.info("Sync scheduler stopped")

    async def join(self) -> None:
        """Wait for the timer and any in-flight cycle to finish."""
        if self._timer is not None:
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        if self._cycle is not None:
            await self._cycle

    async def _run_timer(self) -> None:
        while not self._stopped.is_set():
            self._tick()
            try:
                await asyncio.wait_for(
                    self._stopped.wait(), timeout=self.interval
                )
            except asyncio.TimeoutError:
                pass

    def _tick(self) -> None:
        if self.running:
            self.dropped_ticks += 1
            logger.info("Previous sync cycle still running; tick dropped")
            return
        self._cycle = asyncio.create_task(self._run_guarded())

    async def _run_guarded(self) -> SyncReport | None:
        try:
            return await self.run_cycle()
        except Exception:
            # Keep the timer alive whatever one cycle does
            logger.exception("Sync cycle failed unexpectedly")
            return None

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(
        self,
        store: LocalTaskStore | None = None,
        dry_run: bool = False,
    ) -> SyncReport:
        """Run one reconciliation cycle now.

        Usable without ``start()`` (e.g. a manual "sync now") as long as
        a store is given here or was given to ``start()``.  Waits for a
        cycle already in progress, so the new one sees its links.
        """
        async with self._cycle_lock:
            return await self._run_cycle_locked(store, dry_run)

    async def _run_cycle_locked(
        self, store: LocalTaskStore | None, dry_run: bool
    ) -> SyncReport:
        store = store or self.store
        if store is None:
            raise ConfigError("No local task store supplied")
        started_at = utcnow().isoformat()
        self.cycles_run += 1
        log = cycle_logger(
            logger, self.cycles_run, self.reconciler.client.calendar_id
        )

        try:
            policy = self.policy_store.load()
            if not policy.enabled:
                return self._finish(
                    self._skipped(started_at, "sync disabled", dry_run), log
                )
            bundle = self.credentials.require()
        except ConfigError as exc:
            log.warning("Skipping sync cycle: %s", exc)
            return self._finish(
                self._skipped(started_at, str(exc), dry_run), log
            )

        snapshot = tuple(store.get_tasks())
        try:
            report = await self.reconciler.reconcile(
                snapshot,
                policy,
                store,
                bundle=bundle,
                should_stop=self._stopped.is_set if self.started else None,
                dry_run=dry_run,
            )
        except AuthRevokedError as exc:
            self.policy_store.disable(f"authorization revoked: {exc}")
            report = self._skipped(
                started_at, f"authorization revoked: {exc}", dry_run
            )
        except AuthTransientError as exc:
            log.warning("Skipping sync cycle: %s", exc)
            report = self._skipped(
                started_at, f"authentication failed: {exc}", dry_run
            )
        except ConfigError as exc:
            log.warning("Skipping sync cycle: %s", exc)
            report = self._skipped(started_at, str(exc), dry_run)
        return self._finish(report, log)

    def _finish(
        self, report: SyncReport, log: logging.LoggerAdapter
    ) -> SyncReport:
        self.last_report = report
        if report.skipped_reason:
            log.info("Sync cycle skipped: %s", report.skipped_reason)
        else:
            log.info(
                "Sync cycle done: %d changes, %d errors%s%s",
                report.mutations,
                len(report.errors),
                " (aborted)" if report.aborted else "",
                " (dry run)" if report.dry_run else "",
            )
        if not report.dry_run:
            self.policy_store.record_cycle(report)
        return report

    def _skipped(
        self, started_at: str, reason: str, dry_run: bool
    ) -> SyncReport:
        return SyncReport(
            calendar_id=self.reconciler.client.calendar_id,
            dry_run=dry_run,
            started_at=started_at,
            completed_at=utcnow().isoformat(),
            skipped_reason=reason,
        )

    async def disconnect(self, clear_links: bool = True) -> None:
        """Stop, wait for the running cycle, then disconnect.

        See the module-level ``disconnect()``.
        """
        self.stop()
        await self.join()
        disconnect(
            self.credentials,
            self.policy_store,
            self.reconciler.link_store,
            clear_links=clear_links,
        )


def disconnect(
    credentials: CredentialStore,
    policy_store: PolicyStore,
    link_store: LinkStore,
    clear_links: bool = True,
) -> None:
    """Clear credentials, disable sync and optionally drop all links."""
    credentials.clear()
    policy_store.disable("disconnected")
    if clear_links:
        link_store.clear()
    logger.info(
        "Disconnected Google Calendar%s",
        " and cleared sync links" if clear_links else "",
    )
