"""In-process broadcast telling every entitlement consumer to re-read.

Emitted by whatever completes a reconciliation (e.g. confirm_checkout), so
parts of the app that did not trigger it stop showing a stale cached value.
"""

from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

RefreshListener = Callable[..., Awaitable[None]]


class RefreshSignal:
    def __init__(self) -> None:
        self._listeners: list[RefreshListener] = []

    def connect(self, listener: RefreshListener) -> Callable[[], None]:
        """Subscribe a listener; returns a function that unsubscribes it."""
        if listener not in self._listeners:
            self._listeners.append(listener)
        return lambda: self.disconnect(listener)

    def disconnect(self, listener: RefreshListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def emit(self, **payload) -> int:
        """Await every listener in subscription order. Returns how many succeeded.

        A failing listener is logged and does not stop the others.
        """
        delivered = 0
        for listener in list(self._listeners):
            try:
                await listener(**payload)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "refresh_listener_failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return delivered
