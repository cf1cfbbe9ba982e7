"""EntitlementCache — process-local, time-boxed cache of "is this user premium".

State per signed-in user: UNKNOWN -> CHECKING -> KNOWN -> CHECKING (on refresh).

- Reads within the freshness window are served from memory unless forced.
- A refresh while another is in flight returns the last known value instead
  of issuing a second request.
- Switching users drops the cached value and timer.
- set_optimistic() changes the value without touching the timer, so a forced
  refresh shortly after is what confirms it.
"""

import time
from collections.abc import Callable
from enum import Enum
from typing import Protocol

import structlog

from app.client.api import EntitlementApiClient, EntitlementFetchError, EntitlementSnapshot
from app.client.refresh_signal import RefreshSignal
from app.core.config import get_settings
from app.domain.entitlement import is_entitled

logger = structlog.get_logger(__name__)


class CacheState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    KNOWN = "known"


class EntitlementReader(Protocol):
    async def get_entitlement(self) -> EntitlementSnapshot: ...


class EntitlementCache:
    def __init__(
        self,
        reader: EntitlementReader,
        freshness_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reader = reader
        self.freshness_seconds = (
            freshness_seconds if freshness_seconds is not None else get_settings().entitlement_freshness_seconds
        )
        self._clock = clock

        self.user_id: str | None = None
        self.is_subscribed: bool = False
        self.state: CacheState = CacheState.UNKNOWN
        self.last_checked_at: float | None = None
        self.error: str | None = None

        self._in_flight = False
        self._generation = 0
        self._disconnect: Callable[[], None] | None = None

    def reset(self) -> None:
        """Forget everything, including the current user."""
        self._generation += 1
        self.user_id = None
        self.is_subscribed = False
        self.state = CacheState.UNKNOWN
        self.last_checked_at = None
        self.error = None
        self._in_flight = False

    def set_optimistic(self, value: bool) -> None:
        """Assume a value right after a client-confirmed action; keeps the freshness timer."""
        self.is_subscribed = value
        if self.state is CacheState.UNKNOWN:
            self.state = CacheState.KNOWN

    def is_fresh(self) -> bool:
        if self.last_checked_at is None:
            return False
        return self._clock() - self.last_checked_at < self.freshness_seconds

    async def refresh(self, user_id: str | None, force: bool = False) -> bool:
        """Return whether ``user_id`` is entitled, reading through the API when stale or forced."""
        if user_id is None:
            # Signed out: definitely not subscribed
            self.reset()
            self.state = CacheState.KNOWN
            self.last_checked_at = self._clock()
            return False

        if self.user_id is not None and self.user_id != user_id:
            logger.debug("entitlement_cache_user_switched", previous_user_id=self.user_id, user_id=user_id)
            self.reset()
        self.user_id = user_id

        if not force and self.is_fresh():
            return self.is_subscribed

        if self._in_flight:
            return self.is_subscribed

        generation = self._generation
        self._in_flight = True
        self.state = CacheState.CHECKING
        self.error = None
        try:
            snapshot = await self.reader.get_entitlement()
            value = is_entitled(snapshot.status) or snapshot.is_subscribed
            error = None
        except EntitlementFetchError as exc:
            logger.warning("entitlement_refresh_failed", user_id=user_id, error=str(exc))
            value = False
            error = str(exc)
        finally:
            if generation == self._generation:
                self._in_flight = False

        if generation != self._generation:
            # User switched or cache reset while the read was in flight
            return self.is_subscribed

        self.is_subscribed = value
        self.error = error
        self.state = CacheState.KNOWN
        self.last_checked_at = self._clock()
        return value

    def attach(self, signal: RefreshSignal) -> None:
        """Force a refresh for the current user whenever the signal fires."""
        self.detach()
        self._disconnect = signal.connect(self._on_refresh_signal)

    def detach(self) -> None:
        if self._disconnect is not None:
            self._disconnect()
            self._disconnect = None

    async def _on_refresh_signal(self, **payload) -> None:
        user_id = payload.get("user_id") or self.user_id
        if user_id is None or (self.user_id is not None and user_id != self.user_id):
            return
        await self.refresh(user_id, force=True)


async def confirm_checkout(
    api: EntitlementApiClient,
    cache: EntitlementCache,
    signal: RefreshSignal,
    session_id: str,
) -> bool:
    """Called when the user lands back from checkout.

    Shows premium immediately, asks the API to reconcile with the session id,
    then tells every cache to re-read, whether or not the sync succeeded.
    """
    cache.set_optimistic(True)
    try:
        result = await api.sync(session_id=session_id)
    finally:
        await signal.emit(user_id=cache.user_id)
    return bool(result.get("is_subscribed"))
