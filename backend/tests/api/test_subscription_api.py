"""Tests for the subscription routes: read model, sync, checkout-success and debug."""

import pytest

from app.domain.entitlement import record_from_processor
from tests.fakes import make_checkout_session, make_subscription

pytestmark = pytest.mark.integration


async def _store(store, sub_id="sub_1", status="active", user_id="u1"):
    await store.upsert(record_from_processor(make_subscription(sub_id, status, user_id), user_id))


class TestReadEntitlement:
    async def test_no_subscription(self, client):
        response = await client.get("/api/subscription")

        assert response.status_code == 200
        assert response.json() == {"status": None, "current_period_end": None, "is_subscribed": False}

    async def test_trialing_subscription(self, client, store):
        await _store(store, status="trialing")

        body = (await client.get("/api/subscription")).json()

        assert body["status"] == "trialing"
        assert body["is_subscribed"] is True
        assert body["current_period_end"].startswith("2025-02-01T00:00:00")

    async def test_read_never_calls_processor(self, client, processor):
        await client.get("/api/subscription")
        assert processor.total_calls == 0


class TestSync:
    async def test_fast_path(self, client, store, processor):
        await _store(store, status="active")

        response = await client.post("/api/subscription/sync", json={"session_id": "cs_1"})

        assert response.status_code == 200
        assert response.json()["is_subscribed"] is True
        assert response.json()["synced"] is False
        assert response.json()["source"] == "store"
        assert processor.total_calls == 0

    async def test_session_hint_syncs(self, client, store, processor):
        processor.add_session(make_checkout_session("cs_1", "sub_1", "u1"))
        processor.add_subscription(make_subscription("sub_1", "trialing", "u1"))

        response = await client.post("/api/subscription/sync", json={"session_id": "cs_1"})

        body = response.json()
        assert body == {
            "is_subscribed": True,
            "synced": True,
            "source": "checkout_session",
            "subscription_id": "sub_1",
            "status": "trialing",
        }
        assert await store.get_flag("u1") is True

    async def test_empty_body_uses_customer_search(self, client, processor):
        processor.customers_by_email["u1@example.com"] = "cus_1"
        processor.add_subscription(make_subscription("sub_1", "active", "u1"))

        response = await client.post("/api/subscription/sync")

        assert response.status_code == 200
        assert response.json()["source"] == "customer_search"

    async def test_nothing_found(self, client):
        response = await client.post("/api/subscription/sync", json={})

        assert response.status_code == 200
        assert response.json()["is_subscribed"] is False
        assert response.json()["synced"] is False

    async def test_undetermined_is_503(self, client, processor):
        processor.fail["find_customer_ids"] = -1

        response = await client.post("/api/subscription/sync", json={})

        assert response.status_code == 503


class TestCheckoutSuccess:
    async def test_stores_subscription(self, client, store, processor):
        processor.add_session(make_checkout_session("cs_1", "sub_1", "u1"))
        processor.add_subscription(make_subscription("sub_1", "active", "u1"))

        response = await client.post("/api/subscription/checkout-success", json={"session_id": "cs_1"})

        assert response.status_code == 200
        assert response.json() == {"subscription_id": "sub_1", "status": "active", "is_subscribed": True}
        assert await store.get_flag("u1") is True

    async def test_session_id_required(self, client):
        response = await client.post("/api/subscription/checkout-success", json={})
        assert response.status_code == 400

    async def test_session_without_subscription_is_404(self, client, processor):
        processor.add_session(make_checkout_session("cs_1", subscription=None, user_id="u1", status="open"))

        response = await client.post("/api/subscription/checkout-success", json={"session_id": "cs_1"})

        assert response.status_code == 404

    async def test_processor_down_is_502(self, client, processor):
        processor.fail["retrieve_checkout_session"] = -1

        response = await client.post("/api/subscription/checkout-success", json={"session_id": "cs_1"})

        assert response.status_code == 502


class TestDebug:
    async def test_reports_database_and_stripe(self, client, store, processor):
        await _store(store)
        processor.customers_by_email["u1@example.com"] = "cus_1"
        processor.add_subscription(make_subscription("sub_1", "active", "u1"))

        body = (await client.get("/api/subscription/debug")).json()

        assert body["user_id"] == "u1"
        assert body["email"] == "u1@example.com"
        assert body["database"]["subscription"]["id"] == "sub_1"
        assert body["stripe"]["subscriptions"][0]["id"] == "sub_1"
        assert body["database"]["subscription"]["current_period_end"].startswith("2025-02-01T00:00:00")
        assert body["database"]["is_subscribed"] is True
        assert body["stripe"] == {
            "subscriptions": [{"id": "sub_1", "status": "active", "customer": "cus_1"}],
            "error": None,
        }

    async def test_shape_without_record_or_stripe(self, client, processor):
        processor.fail["find_customer_ids"] = -1

        response = await client.get("/api/subscription/debug")

        assert response.status_code == 200
        body = response.json()
        assert body["database"] == {"subscription": None, "is_subscribed": False, "stripe_customer_id": None}
        assert body["stripe"]["subscriptions"] == []
        assert body["stripe"]["error"]
