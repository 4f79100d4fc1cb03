"""Reconciler: one sync cycle between the local task store and a calendar.

``Reconciler.reconcile()`` runs a full cycle:

1. Ensures a valid access token (retried once on a transient failure).
2. Lists remote events in the cycle's time window.
3. Fetches linked events missing from the listing, to tell events that
   were deleted from events that merely fall outside the window.
4. Diffs the task snapshot against the events and the link table
   (``Reconciler.diff()``, pure).
5. Applies each decision in order, saving the link table after every
   change so an interrupted cycle never leaves it behind the remote side.
6. Builds and returns a ``SyncReport``.

Errors are isolated per decision: one failing item becomes a failed
``SyncResult`` and the cycle moves on.  ``AuthRevokedError`` is the
exception and propagates to the caller.  A 401 mid-cycle triggers one
token refresh and one retry of the call.

The stop flag is checked before each remote call outside a decision and
between decisions, never inside one.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..core.async_utils import run_sync
from ..errors import AuthRevokedError, AuthTransientError, RemoteNotFoundError
from .links import LinkStore, LinkTable
from .mapper import (
    event_match_key,
    event_to_task_draft,
    event_to_task_fields,
    task_match_key,
    task_to_draft,
)
from .models import (
    EventDraft,
    RemoteEvent,
    SyncAction,
    SyncDecision,
    SyncLink,
    SyncReport,
    SyncResult,
    Task,
    TimeWindow,
    utcnow,
)
from .policy import SyncPolicy
from .ports import LocalTaskStore

if TYPE_CHECKING:
    from ..auth.credentials import CredentialBundle
    from ..auth.refresher import TokenRefresher
    from ..core.client import CalendarClient

logger = logging.getLogger(__name__)


@dataclass
class _Cycle:
    """Mutable state of one running cycle."""

    bundle: CredentialBundle
    links: LinkTable
    store: LocalTaskStore
    dry_run: bool
    should_stop: Callable[[], bool]
    import_profile_id: str | None = None
    results: list[SyncResult] = field(default_factory=list)
    aborted: bool = False


class Reconciler:
    """Diff and apply one reconciliation cycle.

    Args:
        client: Calendar API client; its calls are blocking and run in a
            worker thread.
        refresher: Supplies valid access tokens.
        link_store: Persistence for the SyncLink table.
        time_zone: IANA zone for timed events and for "today".
        window_past_days: Days before now covered by the event listing.
        window_future_days: Days after now covered by the event listing.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        client: CalendarClient,
        refresher: TokenRefresher,
        link_store: LinkStore,
        time_zone: str = "UTC",
        window_past_days: int = 30,
        window_future_days: int = 60,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.client = client
        self.refresher = refresher
        self.link_store = link_store
        self.time_zone = time_zone
        self.window_past_days = window_past_days
        self.window_future_days = window_future_days
        self._clock = clock

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        tasks: Iterable[Task],
        policy: SyncPolicy,
        store: LocalTaskStore,
        bundle: CredentialBundle | None = None,
        links: LinkTable | None = None,
        window: TimeWindow | None = None,
        should_stop: Callable[[], bool] | None = None,
        dry_run: bool = False,
    ) -> SyncReport:
        """Run one cycle against an immutable task snapshot.

        Args:
            tasks: Snapshot of every local task, in or out of scope.
            policy: Policy snapshot for this cycle.
            store: Local store used for task mutations.
            bundle: Credentials; defaults to the stored bundle.
            links: Link table; loaded from the link store when omitted.
            window: Listing window; defaults to the configured window
                around now.
            should_stop: Polled between steps; when it returns ``True``
                the cycle ends early with ``aborted`` set.
            dry_run: Compute and report decisions without applying them.

        Raises:
            AuthRevokedError: The refresh token was rejected.
            AuthTransientError: No valid token could be obtained.
            ConfigError: No credentials are stored.
        """
        started_at = self._clock().isoformat()
        snapshot = tuple(tasks)
        cycle = _Cycle(
            bundle=await self._valid_bundle(bundle),
            links=links if links is not None else self.link_store.load(),
            store=store,
            dry_run=dry_run,
            should_stop=should_stop or (lambda: False),
            import_profile_id=policy.import_profile_id,
        )
        window = window or TimeWindow.around(
            self._clock(), self.window_past_days, self.window_future_days
        )
        if cycle.should_stop():
            logger.info("Stop requested before listing; ending cycle")
            cycle.aborted = True
            return self._report(started_at, cycle)

        try:
            events = await self._call(
                cycle, self.client.list_events, window
            )
        except AuthRevokedError:
            raise
        except Exception as exc:
            logger.error("Failed to list remote events: %s", exc)
            return self._report(
                started_at,
                cycle,
                skipped_reason=f"Could not list remote events: {exc}",
            )

        events, unknown = await self._resolve_missing_targets(
            cycle, snapshot, policy, events
        )
        decisions = self.diff(
            snapshot, events, cycle.links, policy, unknown_remote_ids=unknown
        )
        if not dry_run and cycle.links.prune_detached(t.id for t in snapshot):
            self.link_store.save(cycle.links)
        logger.info(
            "Reconciling %d tasks against %d events: %d decisions",
            len(snapshot),
            len(events),
            len(decisions),
        )

        for decision in decisions:
            if cycle.should_stop():
                logger.info("Stop requested; ending cycle early")
                cycle.aborted = True
                break
            cycle.results.append(await self._apply_isolated(cycle, decision))

        report = self._report(started_at, cycle)
        logger.info(
            "Cycle finished: %d mutations, %d errors%s",
            report.mutations,
            len(report.errors),
            " (dry run)" if dry_run else "",
        )
        return report

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    def diff(
        self,
        tasks: Iterable[Task],
        events: Iterable[RemoteEvent],
        links: LinkTable,
        policy: SyncPolicy,
        unknown_remote_ids: Iterable[str] = (),
    ) -> list[SyncDecision]:
        """Decide what to do for every link, task and event.

        A linked event absent from *events* is treated as deleted unless
        its id is in *unknown_remote_ids* (its state could not be read).

        Returns:
            Decisions in application order: existing links first, then
            adoptions and remote creations, then local creations.
        """
        tasks_by_id = {t.id: t for t in tasks}
        events_by_id = {e.remote_id: e for e in events}
        unknown = set(unknown_remote_ids)
        decisions: list[SyncDecision] = []

        for link in sorted(links, key=lambda l: l.local_task_id):
            decisions.append(
                self._decide_linked(
                    link,
                    tasks_by_id.get(link.local_task_id),
                    events_by_id.get(link.remote_event_id),
                    link.remote_event_id in unknown,
                    policy,
                )
            )

        linked_events = {link.remote_event_id for link in links}
        in_scope, _ = policy.partition(tasks_by_id.values())
        unlinked_tasks = [t for t in in_scope if t.id not in links]
        free_events = [
            e
            for e in events_by_id.values()
            if e.remote_id not in linked_events and not e.cancelled
        ]
        claimed_tasks: set[str] = set()
        claimed_events: set[str] = set()

        # Remote events the user created that duplicate a local task
        if policy.two_way:
            by_key: dict[tuple[str, str, str], Task] = {}
            for task in unlinked_tasks:
                by_key.setdefault(task_match_key(task), task)
            for event in free_events:
                if event.source_task_id:
                    continue
                task = by_key.get(event_match_key(event))
                if task is None or task.id in claimed_tasks:
                    continue
                claimed_tasks.add(task.id)
                claimed_events.add(event.remote_id)
                decisions.append(
                    SyncDecision(
                        action=SyncAction.ADOPT,
                        task=task,
                        event=event,
                        reason="matched by title, date and time",
                    )
                )

        tagged: dict[str, RemoteEvent] = {}
        for event in sorted(free_events, key=lambda e: e.updated, reverse=True):
            if event.source_task_id:
                tagged.setdefault(event.source_task_id, event)

        for task in sorted(unlinked_tasks, key=lambda t: t.id):
            if task.id in claimed_tasks:
                continue
            event = tagged.get(task.id)
            detached_at = links.detached_at(task.id)
            if event is not None and event.remote_id not in claimed_events:
                claimed_events.add(event.remote_id)
                decisions.append(
                    SyncDecision(
                        action=SyncAction.ADOPT,
                        task=task,
                        event=event,
                        reason="event already tagged with this task",
                    )
                )
            elif detached_at is not None and task.updated_at <= detached_at:
                decisions.append(
                    SyncDecision(
                        action=SyncAction.SKIP,
                        task=task,
                        reason="event was deleted on the calendar",
                    )
                )
            else:
                decisions.append(
                    SyncDecision(action=SyncAction.CREATE_REMOTE, task=task)
                )

        if policy.two_way:
            for event in free_events:
                if event.source_task_id or event.remote_id in claimed_events:
                    continue
                decisions.append(
                    SyncDecision(action=SyncAction.CREATE_LOCAL, event=event)
                )

        return decisions

    def _decide_linked(
        self,
        link: SyncLink,
        task: Task | None,
        event: RemoteEvent | None,
        unknown: bool,
        policy: SyncPolicy,
    ) -> SyncDecision:
        remote_deleted = not unknown and (event is None or event.cancelled)

        if task is None:
            if policy.delete_remote_on_local_delete and not remote_deleted:
                return SyncDecision(
                    action=SyncAction.DELETE_REMOTE,
                    event=event,
                    link=link,
                    reason="local task deleted",
                )
            return SyncDecision(
                action=SyncAction.UNLINK,
                event=event,
                link=link,
                reason="local task deleted",
            )
        if unknown:
            return SyncDecision(
                action=SyncAction.SKIP,
                task=task,
                link=link,
                reason=(
                    "remote event could not be read"
                    if policy.in_scope(task)
                    else "task out of scope"
                ),
            )
        if remote_deleted:
            return SyncDecision(
                action=SyncAction.UNLINK,
                task=task,
                event=event,
                link=link,
                reason="remote event deleted",
            )
        if not policy.in_scope(task):
            return SyncDecision(
                action=SyncAction.SKIP,
                task=task,
                event=event,
                link=link,
                reason="task out of scope",
            )

        local_changed = task.updated_at > link.last_synced_local_updated_at
        remote_changed = event.updated > link.last_synced_remote_updated_at

        if local_changed and remote_changed and policy.two_way:
            action, reason = SyncAction.CONFLICT, "both sides changed; local wins"
        elif local_changed:
            action, reason = SyncAction.PUSH, None
        elif remote_changed and policy.two_way:
            action, reason = SyncAction.PULL, None
        elif (
            policy.import_profile_id
            and task.project_id != policy.import_profile_id
        ):
            action = SyncAction.REHOME
            reason = f"moved to profile {policy.import_profile_id}"
        else:
            action, reason = SyncAction.SKIP, "unchanged"
        return SyncDecision(
            action=action, task=task, event=event, link=link, reason=reason
        )

    async def _resolve_missing_targets(
        self,
        cycle: _Cycle,
        tasks: tuple[Task, ...],
        policy: SyncPolicy,
        events: list[RemoteEvent],
    ) -> tuple[list[RemoteEvent], set[str]]:
        """Fetch linked events that the window listing did not return.

        Returns:
            ``(events, unknown_ids)``: the listing plus every event found
            individually, and the ids whose state could not be read.
        """
        listed = {e.remote_id for e in events}
        inside, _ = policy.partition(tasks)
        in_scope = {t.id for t in inside}
        found = list(events)
        unknown: set[str] = set()

        for link in cycle.links:
            if link.remote_event_id in listed:
                continue
            if link.local_task_id not in in_scope:
                # Nothing to push or pull for it this cycle
                unknown.add(link.remote_event_id)
                continue
            if cycle.should_stop():
                unknown.add(link.remote_event_id)
                continue
            try:
                event = await self._call(
                    cycle, self.client.get_event, link.remote_event_id
                )
            except RemoteNotFoundError:
                logger.info(
                    "Linked event %s no longer exists", link.remote_event_id
                )
                continue
            except AuthRevokedError:
                raise
            except Exception as exc:
                logger.warning(
                    "Could not fetch linked event %s: %s",
                    link.remote_event_id,
                    exc,
                )
                unknown.add(link.remote_event_id)
                continue
            found.append(event)
        return found, unknown

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def _apply_isolated(
        self, cycle: _Cycle, decision: SyncDecision
    ) -> SyncResult:
        """Apply one decision; any failure except a revoked grant is local."""
        if cycle.dry_run:
            return self._result(decision, note=decision.reason)
        try:
            return await self._apply(cycle, decision)
        except AuthRevokedError:
            raise
        except Exception as exc:
            logger.error(
                "Failed to %s %r: %s",
                decision.action.value,
                decision.title,
                exc,
            )
            return self._result(decision, success=False, note=str(exc))

    async def _apply(
        self, cycle: _Cycle, decision: SyncDecision
    ) -> SyncResult:
        action = decision.action

        if action == SyncAction.SKIP:
            return self._result(decision, note=decision.reason)

        if action == SyncAction.UNLINK:
            if decision.task is not None:
                # Deleted on the calendar: do not push it back unedited
                cycle.links.detach(decision.task.id, decision.task.updated_at)
                self.link_store.save(cycle.links)
            else:
                self._unlink(cycle, decision.link)
            return self._result(decision, note=decision.reason)

        if action == SyncAction.DELETE_REMOTE:
            await self._call(
                cycle, self.client.delete_event, decision.link.remote_event_id
            )
            self._unlink(cycle, decision.link)
            return self._result(decision, note=decision.reason)

        if action == SyncAction.CREATE_REMOTE:
            event = await self._call(
                cycle, self.client.create_event, self._draft(decision.task)
            )
            self._link(cycle, decision.task, event)
            return self._result(decision, remote_event_id=event.remote_id)

        if action in (SyncAction.PUSH, SyncAction.CONFLICT):
            event = await self._call(
                cycle,
                self.client.update_event,
                decision.remote_event_id,
                self._draft(decision.task),
            )
            self._link(cycle, decision.task, event)
            return self._result(decision, note=decision.reason)

        if action == SyncAction.PULL:
            task = decision.task
            cycle.store.update_task(
                task.id,
                event_to_task_fields(decision.event, cycle.import_profile_id),
            )
            self._link(cycle, self._reread(cycle.store, task), decision.event)
            return self._result(decision)

        if action == SyncAction.CREATE_LOCAL:
            event = decision.event
            task = cycle.store.add_task(
                event_to_task_draft(event, cycle.import_profile_id)
            )
            # Link before tagging so a failed tag cannot cause a re-import
            self._link(cycle, task, event)
            tagged = await self._call(
                cycle, self.client.tag_event, event.remote_id, task.id
            )
            self._link(cycle, task, tagged)
            return self._result(decision, task_id=task.id)

        if action == SyncAction.REHOME:
            task = decision.task
            cycle.store.update_task(
                task.id, {"project_id": cycle.import_profile_id}
            )
            # Only reached for tasks in sync, so the new timestamp is synced too
            current = self._reread(cycle.store, task)
            cycle.links.upsert(
                decision.link.model_copy(
                    update={"last_synced_local_updated_at": current.updated_at}
                )
            )
            self.link_store.save(cycle.links)
            return self._result(decision, note=decision.reason)

        if action == SyncAction.ADOPT:
            task, event = decision.task, decision.event
            if event.source_task_id == task.id:
                adopted = await self._call(
                    cycle,
                    self.client.update_event,
                    event.remote_id,
                    self._draft(task),
                )
            else:
                adopted = await self._call(
                    cycle, self.client.tag_event, event.remote_id, task.id
                )
            self._link(cycle, task, adopted)
            return self._result(decision, note=decision.reason)

        return self._result(
            decision, success=False, note=f"Unhandled action: {action}"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _valid_bundle(
        self, bundle: CredentialBundle | None
    ) -> CredentialBundle:
        try:
            return await self.refresher.ensure_valid(bundle)
        except AuthTransientError as exc:
            logger.warning("Token refresh failed, retrying once: %s", exc)
            return await self.refresher.ensure_valid(bundle)

    async def _call(
        self, cycle: _Cycle, func: Callable[..., Any], *args: Any
    ) -> Any:
        """Call a client method with the cycle's token.

        A 401 refreshes the token and retries the call once.
        """
        try:
            return await run_sync(func, *args, cycle.bundle.access_token)
        except AuthTransientError:
            logger.info("Access token rejected; refreshing and retrying")
            cycle.bundle = await self.refresher.refresh(cycle.bundle)
            return await run_sync(func, *args, cycle.bundle.access_token)

    def _draft(self, task: Task) -> EventDraft:
        return task_to_draft(task, self._today(), self.time_zone)

    def _today(self) -> dt.date:
        now = self._clock()
        try:
            return now.astimezone(ZoneInfo(self.time_zone)).date()
        except ZoneInfoNotFoundError:
            logger.warning(
                "Unknown time zone %r; using UTC dates", self.time_zone
            )
            return now.astimezone(dt.timezone.utc).date()

    @staticmethod
    def _reread(store: LocalTaskStore, task: Task) -> Task:
        """The stored version of *task* after an update, if still present."""
        for current in store.get_tasks():
            if current.id == task.id:
                return current
        return task

    def _link(self, cycle: _Cycle, task: Task, event: RemoteEvent) -> None:
        cycle.links.upsert(
            SyncLink(
                local_task_id=task.id,
                remote_event_id=event.remote_id,
                last_synced_local_updated_at=task.updated_at,
                last_synced_remote_updated_at=event.updated,
            )
        )
        self.link_store.save(cycle.links)

    def _unlink(self, cycle: _Cycle, link: SyncLink) -> None:
        cycle.links.remove(link.local_task_id)
        self.link_store.save(cycle.links)

    @staticmethod
    def _result(
        decision: SyncDecision,
        success: bool = True,
        note: str | None = None,
        task_id: str | None = None,
        remote_event_id: str | None = None,
    ) -> SyncResult:
        return SyncResult(
            task_id=task_id or decision.task_id,
            remote_event_id=remote_event_id or decision.remote_event_id,
            title=decision.title,
            action=decision.action,
            success=success,
            error=note,
        )

    def _report(
        self,
        started_at: str,
        cycle: _Cycle,
        skipped_reason: str | None = None,
    ) -> SyncReport:
        return SyncReport(
            calendar_id=self.client.calendar_id,
            dry_run=cycle.dry_run,
            results=list(cycle.results),
            started_at=started_at,
            completed_at=self._clock().isoformat(),
            aborted=cycle.aborted,
            skipped_reason=skipped_reason,
        )
