"""Tests for the entitlement predicate and processor-object normalization."""

from datetime import datetime, timedelta, timezone

import pytest

from app.domain.entitlement import (
    EntitlementRecord,
    checkout_user_id,
    from_epoch,
    is_entitled,
    metadata_user_id,
    object_id,
    pick_current,
    record_from_processor,
)
from tests.fakes import epoch, make_checkout_session, make_subscription

pytestmark = pytest.mark.unit

NOW = datetime(2025, 1, 15, tzinfo=timezone.utc)


def _record(sub_id: str, status: str, created: datetime) -> EntitlementRecord:
    return EntitlementRecord(
        id=sub_id,
        user_id="u1",
        status=status,
        created_at=created,
        current_period_start=created,
        current_period_end=created + timedelta(days=30),
    )


class TestIsEntitled:
    @pytest.mark.parametrize("status", ["active", "trialing"])
    def test_entitling_statuses(self, status):
        assert is_entitled(status) is True

    @pytest.mark.parametrize(
        "status",
        ["past_due", "canceled", "incomplete", "incomplete_expired", "unpaid", "paused", "something_new", ""],
    )
    def test_everything_else_is_not_entitled(self, status):
        assert is_entitled(status) is False

    def test_none_is_not_entitled(self):
        assert is_entitled(None) is False

    def test_record_entitled_follows_status(self):
        assert _record("sub_1", "trialing", NOW).entitled is True
        assert _record("sub_1", "past_due", NOW).entitled is False


class TestFromEpoch:
    def test_converts_seconds_to_aware_utc(self):
        assert from_epoch(epoch(2025, 2, 1)) == datetime(2025, 2, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, 0, -5, "not-a-number", float("nan"), True])
    def test_invalid_values_are_none(self, value):
        assert from_epoch(value) is None

    def test_naive_datetime_gets_utc(self):
        assert from_epoch(datetime(2025, 1, 1)).tzinfo == timezone.utc


class TestReferences:
    def test_metadata_user_id_accepts_both_spellings(self):
        assert metadata_user_id({"userId": "u1"}) == "u1"
        assert metadata_user_id({"user_id": "u2"}) == "u2"
        assert metadata_user_id({}) is None
        assert metadata_user_id(None) is None

    def test_object_id_handles_bare_and_expanded(self):
        assert object_id("cus_1") == "cus_1"
        assert object_id({"id": "cus_2", "object": "customer"}) == "cus_2"
        assert object_id(None) is None
        assert object_id({}) is None

    def test_checkout_user_id_prefers_client_reference(self):
        session = make_checkout_session(user_id="u1")
        session["metadata"] = {"userId": "someone_else"}
        assert checkout_user_id(session) == "u1"

    def test_checkout_user_id_falls_back_to_metadata(self):
        session = make_checkout_session(user_id=None)
        session["metadata"] = {"userId": "u3"}
        assert checkout_user_id(session) == "u3"


class TestRecordFromProcessor:
    def test_trialing_subscription(self):
        sub = make_subscription("sub_1", "trialing", "u1", trial_end=epoch(2025, 2, 1))

        record = record_from_processor(sub, "u1", now=NOW)

        assert record.id == "sub_1"
        assert record.user_id == "u1"
        assert record.status == "trialing"
        assert record.entitled is True
        assert record.price_id == "price_premium_monthly"
        assert record.current_period_end == datetime(2025, 2, 1, tzinfo=timezone.utc)
        assert record.trial_end == datetime(2025, 2, 1, tzinfo=timezone.utc)
        assert record.metadata == {"userId": "u1"}

    def test_period_falls_back_to_first_item(self):
        sub = make_subscription("sub_1")
        del sub["current_period_start"]
        del sub["current_period_end"]
        sub["items"]["data"][0]["current_period_start"] = epoch(2025, 3, 1)
        sub["items"]["data"][0]["current_period_end"] = epoch(2025, 4, 1)

        record = record_from_processor(sub, "u1", now=NOW)

        assert record.current_period_start == datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert record.current_period_end == datetime(2025, 4, 1, tzinfo=timezone.utc)

    def test_missing_required_timestamps_default_to_now(self):
        sub = {"id": "sub_bare", "status": "active"}

        record = record_from_processor(sub, "u1", now=NOW)

        assert record.created_at == NOW
        assert record.current_period_start == NOW
        assert record.current_period_end == NOW
        assert record.price_id is None
        assert record.quantity == 1

    def test_missing_status_is_incomplete(self):
        record = record_from_processor({"id": "sub_x"}, "u1", now=NOW)
        assert record.status == "incomplete"
        assert record.entitled is False

    def test_missing_id_raises(self):
        with pytest.raises(ValueError):
            record_from_processor({"status": "active"}, "u1")


class TestPickCurrent:
    def test_empty(self):
        assert pick_current([]) is None

    def test_entitling_record_wins_over_newer_lapsed_one(self):
        old_active = _record("sub_old", "active", NOW - timedelta(days=60))
        new_canceled = _record("sub_new", "canceled", NOW)
        assert pick_current([new_canceled, old_active]).id == "sub_old"

    def test_most_recent_among_equals(self):
        first = _record("sub_a", "past_due", NOW - timedelta(days=2))
        second = _record("sub_b", "unpaid", NOW - timedelta(days=1))
        assert pick_current([first, second]).id == "sub_b"
