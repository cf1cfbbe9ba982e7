"""Async client for the entitlement endpoints, with a process-local cache."""

from app.client.api import EntitlementApiClient, EntitlementFetchError, EntitlementSnapshot
from app.client.cache import CacheState, EntitlementCache, confirm_checkout
from app.client.refresh_signal import RefreshSignal

__all__ = [
    "CacheState",
    "EntitlementApiClient",
    "EntitlementCache",
    "EntitlementFetchError",
    "EntitlementSnapshot",
    "RefreshSignal",
    "confirm_checkout",
]
