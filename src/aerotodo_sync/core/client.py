"""Authenticated transport to the Google Calendar v3 API.

Every method takes the access token from the caller; the client never
refreshes tokens itself.  Transient failures (timeouts, connection
errors, 429, 5xx) are retried up to ``config.max_attempts`` times with
exponential backoff, honouring ``Retry-After``.  A 401 fails immediately
with ``AuthTransientError`` so the caller can refresh and retry once.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from email.utils import parsedate_to_datetime
from typing import Any, Callable
from urllib.parse import quote

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Config
from ..errors import (
    AuthTransientError,
    RemoteCalendarError,
    RemoteNotFoundError,
    TransientNetworkError,
)
from ..sync.models import EventDraft, RemoteEvent, TimeSlot, TimeWindow

logger = logging.getLogger(__name__)

PAGE_SIZE = 250
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class CalendarClient:
    """Google Calendar events API for one calendar.

    Args:
        config: Engine configuration (API base, timeouts, retry bounds).
        calendar_id: Calendar to operate on; defaults to
            ``config.calendar_id``.
        sleep: Sleep function used between retries.
    """

    def __init__(
        self,
        config: Config,
        calendar_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.calendar_id = calendar_id or config.calendar_id
        self._thread_local = threading.local()
        self._sleep = sleep
        self._exponential = wait_exponential(
            multiplier=config.backoff_base, max=config.backoff_max
        )
        self.events_url = (
            f"{config.api_base.rstrip('/')}/calendars/"
            f"{quote(self.calendar_id, safe='')}/events"
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @property
    def session(self) -> requests.Session:
        """The current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = requests.Session()
            session.headers["Accept"] = "application/json"
            self._thread_local.session = session
        return self._thread_local.session

    def _should_retry(self, exc: BaseException) -> bool:
        """Whether a failed attempt is retried in place.

        A ``Retry-After`` longer than ``backoff_max`` is never shortened:
        the error goes to the caller and the item is tried again on the
        next cycle.
        """
        if not isinstance(exc, TransientNetworkError):
            return False
        retry_after = exc.retry_after
        if retry_after is not None and retry_after > self.config.backoff_max:
            logger.warning(
                "Server asked to retry after %.0fs; deferring to next cycle",
                retry_after,
            )
            return False
        return True

    def _wait(self, retry_state: RetryCallState) -> float:
        """Server-provided ``Retry-After`` wins over exponential backoff."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientNetworkError) and exc.retry_after is not None:
            return exc.retry_after
        return self._exponential(retry_state)

    def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one API request with bounded retries for transient errors."""
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self._should_retry),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(
            self._send, method, url, access_token, params=params, json=json
        )

    def _send(
        self,
        method: str,
        url: str,
        access_token: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._get_session().request(
                method,
                url,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=(10, self.config.request_timeout),
            )
        except requests.Timeout as exc:
            raise TransientNetworkError(
                f"{method} {url} timed out: {exc}"
            ) from exc
        except requests.ConnectionError as exc:
            raise TransientNetworkError(
                f"{method} {url} connection failed: {exc}"
            ) from exc

        status = response.status_code
        if status == 401:
            raise AuthTransientError(
                f"{method} {url} rejected the access token (401)"
            )
        if status in RETRYABLE_STATUS:
            raise TransientNetworkError(
                f"{method} {url} returned {status}",
                status_code=status,
                retry_after=_parse_retry_after(
                    response.headers.get("Retry-After")
                ),
            )
        if status in (404, 410):
            raise RemoteNotFoundError(
                f"{method} {url} returned {status}", status_code=status
            )
        if status >= 400:
            raise RemoteCalendarError(
                f"{method} {url} returned {status}: {_error_message(response)}",
                status_code=status,
            )
        if status == 204 or not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Events API
    # ------------------------------------------------------------------

    def list_events(
        self, window: TimeWindow, access_token: str
    ) -> list[RemoteEvent]:
        """List events overlapping *window*, following pagination.

        Recurring events are returned as their master event, not expanded
        into instances.
        """
        params: dict[str, Any] = {
            "timeMin": window.start.isoformat(),
            "timeMax": window.end.isoformat(),
            "maxResults": PAGE_SIZE,
            "singleEvents": "false",
        }
        events: list[RemoteEvent] = []
        while True:
            payload = self._request(
                "GET", self.events_url, access_token, params=params
            )
            for item in payload.get("items", []):
                try:
                    events.append(event_from_api(item))
                except (KeyError, ValueError) as exc:
                    logger.warning(
                        "Skipping unparseable event %s: %s",
                        item.get("id", "?"),
                        exc,
                    )
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}
        logger.debug(
            "Listed %d events in %s", len(events), self.calendar_id
        )
        return events

    def get_event(self, remote_id: str, access_token: str) -> RemoteEvent:
        """Fetch one event.

        Raises:
            RemoteNotFoundError: The event does not exist.
        """
        payload = self._request(
            "GET", self._event_url(remote_id), access_token
        )
        return event_from_api(payload)

    def create_event(
        self, draft: EventDraft, access_token: str
    ) -> RemoteEvent:
        """Insert a new event built from *draft*."""
        payload = self._request(
            "POST", self.events_url, access_token, json=draft_to_api(draft)
        )
        return event_from_api(payload)

    def update_event(
        self, remote_id: str, patch: EventDraft, access_token: str
    ) -> RemoteEvent:
        """Patch an existing event with the fields of *patch*."""
        payload = self._request(
            "PATCH",
            self._event_url(remote_id),
            access_token,
            json=draft_to_api(patch),
        )
        return event_from_api(payload)

    def tag_event(
        self, remote_id: str, source_task_id: str, access_token: str
    ) -> RemoteEvent:
        """Record *source_task_id* on an event without touching its content."""
        payload = self._request(
            "PATCH",
            self._event_url(remote_id),
            access_token,
            json={
                "extendedProperties": {
                    "private": {"sourceTaskId": source_task_id}
                }
            },
        )
        return event_from_api(payload)

    def delete_event(self, remote_id: str, access_token: str) -> None:
        """Delete an event; an already-missing event counts as deleted."""
        try:
            self._request("DELETE", self._event_url(remote_id), access_token)
        except RemoteNotFoundError:
            logger.debug("Event %s already gone", remote_id)

    def _event_url(self, remote_id: str) -> str:
        return f"{self.events_url}/{quote(remote_id, safe='')}"


# ----------------------------------------------------------------------
# Wire format
# ----------------------------------------------------------------------


def draft_to_api(draft: EventDraft) -> dict[str, Any]:
    """Build the API request body for *draft*."""
    body: dict[str, Any] = {
        "summary": draft.title,
        "description": draft.description,
    }
    end_date = draft.end_date or draft.start_date
    if draft.time_slot is not None:
        body["start"] = {
            "dateTime": f"{draft.start_date.isoformat()}T{draft.time_slot.start}:00",
            "timeZone": draft.time_zone,
        }
        body["end"] = {
            "dateTime": f"{end_date.isoformat()}T{draft.time_slot.end}:00",
            "timeZone": draft.time_zone,
        }
    else:
        # All-day end dates are exclusive on the wire
        body["start"] = {"date": draft.start_date.isoformat()}
        body["end"] = {
            "date": (end_date + dt.timedelta(days=1)).isoformat()
        }
    body["recurrence"] = list(draft.recurrence)
    if draft.color_id:
        body["colorId"] = draft.color_id

    private: dict[str, str] = {}
    if draft.source_task_id:
        private["sourceTaskId"] = draft.source_task_id
    if draft.unscheduled:
        private["unscheduled"] = "true"
    if draft.completed:
        private["completed"] = "true"
    if private:
        body["extendedProperties"] = {"private": private}
    return body


def event_from_api(item: dict[str, Any]) -> RemoteEvent:
    """Parse one API event resource.

    Raises:
        KeyError: ``id`` or ``updated`` is missing.
        ValueError: A date or timestamp cannot be parsed.
    """
    start = item.get("start") or {}
    end = item.get("end") or {}
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    time_slot: TimeSlot | None = None

    if start.get("dateTime"):
        start_dt = dt.datetime.fromisoformat(start["dateTime"])
        end_dt = (
            dt.datetime.fromisoformat(end["dateTime"])
            if end.get("dateTime")
            else start_dt
        )
        start_date = start_dt.date()
        end_date = end_dt.date() if end_dt.date() != start_date else None
        time_slot = TimeSlot(
            start=start_dt.strftime("%H:%M"), end=end_dt.strftime("%H:%M")
        )
    elif start.get("date"):
        start_date = dt.date.fromisoformat(start["date"])
        if end.get("date"):
            last_day = dt.date.fromisoformat(end["date"]) - dt.timedelta(days=1)
            end_date = last_day if last_day > start_date else None

    private = (item.get("extendedProperties") or {}).get("private") or {}

    return RemoteEvent(
        remote_id=item["id"],
        title=item.get("summary") or "",
        description=item.get("description") or "",
        start_date=start_date,
        end_date=end_date,
        time_slot=time_slot,
        status=item.get("status", "confirmed"),
        color_id=item.get("colorId"),
        recurrence=list(item.get("recurrence") or []),
        source_task_id=private.get("sourceTaskId"),
        unscheduled=private.get("unscheduled") == "true",
        completed=private.get("completed") == "true",
        updated=dt.datetime.fromisoformat(item["updated"]),
    )


def _parse_retry_after(value: str | None) -> float | None:
    """Parse ``Retry-After`` as seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    return max(0.0, (when - dt.datetime.now(dt.timezone.utc)).total_seconds())


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message", error))
        if error:
            return str(error)
    return str(body)[:200]
