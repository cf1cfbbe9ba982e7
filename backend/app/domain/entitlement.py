"""Entitlement domain: the subscription record and the "is premium" predicate.

Pure functions only -- no DB access, no processor calls.
record_from_processor: normalizes a processor subscription object into an EntitlementRecord.
is_entitled: the single source of truth for premium access, derived from status.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SubscriptionStatus(str, Enum):
    """Processor statuses we know about. Unknown strings are kept as-is."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


ENTITLING_STATUSES: frozenset[str] = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}
)

# Metadata keys that may carry our user id on processor objects
USER_ID_METADATA_KEYS = ("userId", "user_id")


def is_entitled(status: str | None) -> bool:
    """Return True when a subscription status grants premium access."""
    if status is None:
        return False
    return str(status) in ENTITLING_STATUSES


@dataclass(frozen=True)
class EntitlementRecord:
    """Last-known state of one processor subscription, owned by one user.

    Timestamps are timezone-aware UTC. ``entitled`` is always derived from
    ``status`` and never stored separately.
    """

    id: str
    user_id: str
    status: str
    created_at: datetime
    current_period_start: datetime
    current_period_end: datetime
    price_id: str | None = None
    quantity: int = 1
    cancel_at_period_end: bool = False
    ended_at: datetime | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def entitled(self) -> bool:
        return is_entitled(self.status)

    def owned_by(self, user_id: str) -> "EntitlementRecord":
        return replace(self, user_id=user_id)


def from_epoch(value: Any) -> datetime | None:
    """Convert a processor Unix timestamp (seconds) to an aware datetime.

    Returns None for missing, zero, non-numeric or out-of-range values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(seconds) or seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def metadata_user_id(metadata: Any) -> str | None:
    if not isinstance(metadata, dict):
        return None
    for key in USER_ID_METADATA_KEYS:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


def object_id(value: Any) -> str | None:
    """Return the id of a processor reference that may be a bare id or an expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        ref = value.get("id")
        return str(ref) if ref else None
    ref = getattr(value, "id", None)
    return str(ref) if ref else None


def checkout_user_id(session: dict) -> str | None:
    """Resolve our user id from a checkout session (reference field first, then metadata)."""
    ref = session.get("client_reference_id")
    if ref:
        return str(ref)
    return metadata_user_id(session.get("metadata"))


def _first_item(subscription: dict) -> dict:
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def record_from_processor(subscription: dict, user_id: str, now: datetime | None = None) -> EntitlementRecord:
    """Build an EntitlementRecord from a processor subscription object.

    Required timestamps fall back to ``now`` when they cannot be derived, so a
    stored record is always well-formed. Newer API versions report the period
    boundaries on the subscription item rather than the subscription itself.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    sub_id = subscription.get("id")
    if not sub_id:
        raise ValueError("subscription object has no id")

    item = _first_item(subscription)
    price = item.get("price") or {}
    price_id = object_id(price) if price else None

    period_start = subscription.get("current_period_start") or item.get("current_period_start")
    period_end = subscription.get("current_period_end") or item.get("current_period_end")

    metadata = subscription.get("metadata")

    return EntitlementRecord(
        id=str(sub_id),
        user_id=user_id,
        status=str(subscription.get("status") or SubscriptionStatus.INCOMPLETE.value),
        price_id=price_id,
        quantity=int(item.get("quantity") or subscription.get("quantity") or 1),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end") or False),
        created_at=from_epoch(subscription.get("created")) or now,
        current_period_start=from_epoch(period_start) or now,
        current_period_end=from_epoch(period_end) or now,
        ended_at=from_epoch(subscription.get("ended_at")),
        cancel_at=from_epoch(subscription.get("cancel_at")),
        canceled_at=from_epoch(subscription.get("canceled_at")),
        trial_start=from_epoch(subscription.get("trial_start")),
        trial_end=from_epoch(subscription.get("trial_end")),
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )


def pick_current(records: list[EntitlementRecord]) -> EntitlementRecord | None:
    """Pick the record that represents a user's current subscription.

    Entitling records win over non-entitling ones; ties go to the most recently created.
    """
    if not records:
        return None
    return max(records, key=lambda r: (r.entitled, r.created_at))
