"""Tests for the client-side EntitlementCache state machine."""

import asyncio

import httpx
import pytest

from app.client import (
    CacheState,
    EntitlementApiClient,
    EntitlementCache,
    EntitlementFetchError,
    EntitlementSnapshot,
    RefreshSignal,
    confirm_checkout,
)

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeReader:
    def __init__(self, snapshot: EntitlementSnapshot | None = None):
        self.snapshot = snapshot or EntitlementSnapshot(status="active", is_subscribed=True)
        self.reads = 0
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def get_entitlement(self) -> EntitlementSnapshot:
        self.reads += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.snapshot


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def cache(reader, clock):
    return EntitlementCache(reader, freshness_seconds=30.0, clock=clock)


class TestFreshness:
    async def test_starts_unknown(self, cache):
        assert cache.state is CacheState.UNKNOWN
        assert cache.is_subscribed is False

    async def test_two_refreshes_within_window_read_once(self, cache, reader, clock):
        assert await cache.refresh("u1") is True
        clock.advance(29.0)
        assert await cache.refresh("u1") is True

        assert reader.reads == 1
        assert cache.state is CacheState.KNOWN

    async def test_forced_refresh_reads_again(self, cache, reader, clock):
        await cache.refresh("u1")
        clock.advance(0.001)

        await cache.refresh("u1", force=True)

        assert reader.reads == 2

    async def test_stale_value_is_reread(self, cache, reader, clock):
        await cache.refresh("u1")
        clock.advance(30.0)

        await cache.refresh("u1")

        assert reader.reads == 2

    async def test_default_window_comes_from_settings(self, reader):
        assert EntitlementCache(reader).freshness_seconds == 30.0


class TestDerivation:
    async def test_status_alone_entitles(self, clock):
        reader = FakeReader(EntitlementSnapshot(status="trialing", is_subscribed=False))
        cache = EntitlementCache(reader, freshness_seconds=30.0, clock=clock)

        assert await cache.refresh("u1") is True

    async def test_flag_alone_entitles(self, clock):
        reader = FakeReader(EntitlementSnapshot(status=None, is_subscribed=True))
        cache = EntitlementCache(reader, freshness_seconds=30.0, clock=clock)

        assert await cache.refresh("u1") is True

    async def test_neither_is_not_entitled(self, clock):
        reader = FakeReader(EntitlementSnapshot(status="past_due", is_subscribed=False))
        cache = EntitlementCache(reader, freshness_seconds=30.0, clock=clock)

        assert await cache.refresh("u1") is False


class TestFailuresAndUsers:
    async def test_signed_out_is_false_without_read(self, cache, reader):
        assert await cache.refresh(None) is False
        assert reader.reads == 0
        assert cache.state is CacheState.KNOWN

    async def test_fetch_failure_is_false_with_error(self, cache, reader, clock):
        reader.error = EntitlementFetchError("GET /api/subscription returned 503", status_code=503)

        assert await cache.refresh("u1") is False
        assert cache.error is not None
        assert cache.state is CacheState.KNOWN

        # Timer was stamped, so the failure is not retried on every call
        clock.advance(5.0)
        await cache.refresh("u1")
        assert reader.reads == 1

    async def test_unreadable_response_body_is_false_with_error(self, clock):
        api = EntitlementApiClient(
            "http://api.test",
            token="tok_123",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="not json")),
        )
        cache = EntitlementCache(api, freshness_seconds=30.0, clock=clock)

        async with api:
            assert await cache.refresh("u1") is False

        assert "unreadable body" in cache.error
        assert cache.state is CacheState.KNOWN

    async def test_error_clears_on_success(self, cache, reader):
        reader.error = EntitlementFetchError("boom")
        await cache.refresh("u1")
        reader.error = None

        await cache.refresh("u1", force=True)

        assert cache.error is None
        assert cache.is_subscribed is True

    async def test_user_switch_drops_cached_value(self, cache, reader):
        await cache.refresh("u1")

        reader.snapshot = EntitlementSnapshot(status=None, is_subscribed=False)
        assert await cache.refresh("u2") is False

        assert reader.reads == 2
        assert cache.user_id == "u2"

    async def test_concurrent_refreshes_share_one_read(self, cache, reader):
        reader.gate = asyncio.Event()

        first = asyncio.create_task(cache.refresh("u1"))
        await asyncio.sleep(0)
        assert cache.state is CacheState.CHECKING

        second = await cache.refresh("u1")
        reader.gate.set()
        first_result = await first

        assert reader.reads == 1
        assert second is False
        assert first_result is True

    async def test_result_for_previous_user_is_discarded(self, cache, reader):
        reader.gate = asyncio.Event()
        pending = asyncio.create_task(cache.refresh("u1"))
        await asyncio.sleep(0)

        cache.reset()
        reader.gate.set()
        await pending

        assert cache.user_id is None
        assert cache.is_subscribed is False
        assert cache.state is CacheState.UNKNOWN


class TestOptimistic:
    async def test_optimistic_value_keeps_timer(self, cache, reader, clock):
        reader.snapshot = EntitlementSnapshot(status=None, is_subscribed=False)
        await cache.refresh("u1")
        checked_at = cache.last_checked_at

        cache.set_optimistic(True)

        assert cache.is_subscribed is True
        assert cache.last_checked_at == checked_at
        # Still fresh: the optimistic value is served
        assert await cache.refresh("u1") is True
        assert reader.reads == 1

    async def test_forced_refresh_overrides_optimistic_value(self, cache, reader):
        reader.snapshot = EntitlementSnapshot(status=None, is_subscribed=False)
        await cache.refresh("u1")
        cache.set_optimistic(True)

        assert await cache.refresh("u1", force=True) is False


class TestRefreshSignal:
    async def test_signal_forces_refresh_for_current_user(self, cache, reader):
        signal = RefreshSignal()
        cache.attach(signal)
        await cache.refresh("u1")

        await signal.emit(user_id="u1")

        assert reader.reads == 2

    async def test_signal_for_other_user_is_ignored(self, cache, reader):
        signal = RefreshSignal()
        cache.attach(signal)
        await cache.refresh("u1")

        await signal.emit(user_id="u2")

        assert reader.reads == 1

    async def test_detach(self, cache, reader):
        signal = RefreshSignal()
        cache.attach(signal)
        cache.detach()

        assert signal.listener_count == 0


class FakeApi:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result or {"is_subscribed": True, "synced": True, "source": "checkout_session"}
        self.error = error
        self.sync_calls = []

    async def sync(self, session_id=None, subscription_id=None):
        self.sync_calls.append(session_id)
        if self.error is not None:
            raise self.error
        return self.result


class TestConfirmCheckout:
    async def test_sets_optimistic_syncs_and_signals(self, cache, reader):
        signal = RefreshSignal()
        cache.attach(signal)
        await cache.refresh("u1")
        api = FakeApi()

        result = await confirm_checkout(api, cache, signal, "cs_1")

        assert result is True
        assert api.sync_calls == ["cs_1"]
        assert reader.reads == 2
        assert cache.is_subscribed is True

    async def test_signals_even_when_sync_fails(self, cache, reader):
        signal = RefreshSignal()
        cache.attach(signal)
        await cache.refresh("u1")
        api = FakeApi(error=EntitlementFetchError("POST /api/subscription/sync returned 503", status_code=503))

        with pytest.raises(EntitlementFetchError):
            await confirm_checkout(api, cache, signal, "cs_1")

        assert reader.reads == 2
