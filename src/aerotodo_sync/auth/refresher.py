"""Access-token lifecycle with single-flight refresh.

``TokenRefresher.ensure_valid()`` is called before every batch of remote
calls.  When the access token is about to expire it performs one refresh
against the token endpoint; concurrent callers holding the same refresh
token share that in-flight refresh instead of issuing their own.

Failure handling:

* ``AuthRevokedError`` -- the stored bundle is cleared and the error is
  propagated.  Never retried here.
* ``AuthTransientError`` -- propagated unchanged; retrying is the
  caller's decision.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import TYPE_CHECKING, Callable

from ..core.async_utils import run_sync
from ..errors import AuthRevokedError
from ..sync.models import utcnow
from .credentials import CredentialBundle, CredentialStore

if TYPE_CHECKING:
    from ..core.oauth import TokenEndpoint

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = dt.timedelta(minutes=5)


class TokenRefresher:
    """Guarantee a non-expired access token before remote calls.

    Args:
        store: Where refreshed bundles are persisted.
        endpoint: Token endpoint client; ``refresh()`` is blocking and runs
            in a worker thread.
        safety_margin: Tokens expiring within this margin are refreshed.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        store: CredentialStore,
        endpoint: TokenEndpoint,
        safety_margin: dt.timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.store = store
        self.endpoint = endpoint
        self.safety_margin = safety_margin
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[CredentialBundle]] = {}
        self.refresh_count = 0

    async def ensure_valid(
        self, bundle: CredentialBundle | None = None
    ) -> CredentialBundle:
        """Return a bundle whose access token outlives the safety margin.

        Args:
            bundle: Bundle to check; defaults to the stored one.

        Raises:
            ConfigError: No bundle given and none stored.
            AuthRevokedError: The refresh token was rejected.
            AuthTransientError: The refresh failed for another reason.
        """
        if bundle is None:
            bundle = self.store.require()
        if not bundle.expires_within(self.safety_margin, self._clock()):
            return bundle
        return await self.refresh(bundle)

    async def refresh(self, bundle: CredentialBundle) -> CredentialBundle:
        """Refresh *bundle* now, joining an in-flight refresh if one exists.

        Used directly after a 401 from the calendar API, when the access
        token is stale even though its recorded expiry says otherwise.
        """
        key = bundle.refresh_token
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._do_refresh(bundle))
            self._in_flight[key] = task
            task.add_done_callback(
                lambda done: self._refresh_finished(key, done)
            )
        else:
            logger.debug("Joining in-flight token refresh")
        # shield: one cancelled waiter must not cancel the shared refresh
        return await asyncio.shield(task)

    def _refresh_finished(
        self, key: str, task: asyncio.Task[CredentialBundle]
    ) -> None:
        self._in_flight.pop(key, None)
        if not task.cancelled() and task.exception() is not None:
            # Waiters re-raise it; this covers a refresh nobody awaits any more
            logger.debug("Token refresh failed: %s", task.exception())

    async def _do_refresh(self, bundle: CredentialBundle) -> CredentialBundle:
        self.refresh_count += 1
        logger.info("Refreshing Google access token")
        try:
            response = await run_sync(
                self.endpoint.refresh, bundle.refresh_token
            )
        except AuthRevokedError:
            logger.warning(
                "Refresh token revoked -- clearing stored credentials"
            )
            self.store.clear()
            raise

        expires_at = self._clock() + dt.timedelta(
            seconds=response.expires_in
        )
        # expires_at never moves backwards for the same grant
        expires_at = max(expires_at, bundle.expires_at)

        refreshed = CredentialBundle(
            access_token=response.access_token,
            refresh_token=response.refresh_token or bundle.refresh_token,
            expires_at=expires_at,
        )
        self.store.set(refreshed)
        logger.info(
            "Access token refreshed, valid until %s", expires_at.isoformat()
        )
        return refreshed
