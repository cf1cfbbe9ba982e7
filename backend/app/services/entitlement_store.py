"""EntitlementStore — durable subscription records plus the user_profiles.is_subscribed index.

Every record write or delete also rewrites the owning user's flag. The record
commit is authoritative: a flag update that fails after it is logged as drift
(``entitlement_flag_sync_failed``) and healed by the next write or
reconciliation for that user. After an upsert the flag mirrors the user's
current record (``pick_current``), not necessarily the record just written.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import PersistenceFailure
from app.db.models.stripe_event import StripeWebhookEvent
from app.db.models.subscription import Subscription
from app.db.models.user_profile import UserProfile
from app.domain.entitlement import EntitlementRecord, ensure_utc, pick_current

logger = structlog.get_logger(__name__)


def _row_to_record(row: Subscription) -> EntitlementRecord:
    return EntitlementRecord(
        id=row.id,
        user_id=row.user_id,
        status=row.status,
        price_id=row.price_id,
        quantity=row.quantity or 1,
        cancel_at_period_end=bool(row.cancel_at_period_end),
        created_at=ensure_utc(row.created),
        current_period_start=ensure_utc(row.current_period_start),
        current_period_end=ensure_utc(row.current_period_end),
        ended_at=ensure_utc(row.ended_at),
        cancel_at=ensure_utc(row.cancel_at),
        canceled_at=ensure_utc(row.canceled_at),
        trial_start=ensure_utc(row.trial_start),
        trial_end=ensure_utc(row.trial_end),
        metadata=dict(row.metadata_ or {}),
    )


def _apply_record(row: Subscription, record: EntitlementRecord) -> None:
    """Replace every field of the row from the record (no incremental merge)."""
    row.user_id = record.user_id
    row.status = record.status
    row.price_id = record.price_id
    row.quantity = record.quantity
    row.cancel_at_period_end = record.cancel_at_period_end
    row.created = record.created_at
    row.current_period_start = record.current_period_start
    row.current_period_end = record.current_period_end
    row.ended_at = record.ended_at
    row.cancel_at = record.cancel_at
    row.canceled_at = record.canceled_at
    row.trial_start = record.trial_start
    row.trial_end = record.trial_end
    row.metadata_ = dict(record.metadata)


class EntitlementStore:
    """Keyed storage of EntitlementRecords with the per-user flag kept alongside."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Records ─────────────────────────────────────────────────────

    async def upsert(self, record: EntitlementRecord) -> EntitlementRecord:
        """Write the record keyed by id, replacing all fields, then sync the user's flag.

        Raises:
            PersistenceFailure: the record write failed
        """
        for attempt in (1, 2):
            async with self.session_factory() as session:
                try:
                    row = await session.get(Subscription, record.id)
                    if row is None:
                        row = Subscription(id=record.id)
                        session.add(row)
                    _apply_record(row, record)
                    await session.commit()
                    break
                except IntegrityError as exc:
                    # Concurrent insert of the same id: the second pass updates it instead
                    await session.rollback()
                    if attempt == 2:
                        raise PersistenceFailure(f"Failed to upsert subscription {record.id}") from exc
                    logger.info("entitlement_record_insert_race", subscription_id=record.id)
                except SQLAlchemyError as exc:
                    await session.rollback()
                    logger.error(
                        "entitlement_record_upsert_failed",
                        subscription_id=record.id,
                        user_id=record.user_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    raise PersistenceFailure(f"Failed to upsert subscription {record.id}") from exc

        logger.info(
            "entitlement_record_upserted",
            subscription_id=record.id,
            user_id=record.user_id,
            status=record.status,
        )
        await self.sync_flag(record.user_id, await self._current_entitled(record))
        return record

    async def _current_entitled(self, record: EntitlementRecord) -> bool:
        """Entitlement of the user's current record after ``record`` was written."""
        try:
            current = await self.get_by_user(record.user_id)
        except SQLAlchemyError as exc:
            logger.warning(
                "entitlement_current_lookup_failed",
                user_id=record.user_id,
                subscription_id=record.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return record.entitled
        return current.entitled if current is not None else record.entitled

    async def delete(self, record_id: str, user_id: str | None = None) -> bool:
        """Remove a record and set the owner's flag to False.

        The flag is cleared even when the record did not exist, as long as an
        owner is known (``user_id`` or the stored row's owner).

        Returns:
            True if a row was deleted
        """
        async with self.session_factory() as session:
            try:
                row = await session.get(Subscription, record_id)
                owner = user_id or (row.user_id if row is not None else None)
                existed = row is not None
                if existed:
                    await session.execute(delete(Subscription).where(Subscription.id == record_id))
                    await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "entitlement_record_delete_failed",
                    subscription_id=record_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise PersistenceFailure(f"Failed to delete subscription {record_id}") from exc

        logger.info("entitlement_record_deleted", subscription_id=record_id, user_id=owner, existed=existed)
        if owner:
            await self.sync_flag(owner, False)
        return existed

    async def get_by_id(self, record_id: str) -> EntitlementRecord | None:
        async with self.session_factory() as session:
            row = await session.get(Subscription, record_id)
            return _row_to_record(row) if row is not None else None

    async def get_by_user(self, user_id: str) -> EntitlementRecord | None:
        """Return the user's current record: entitling first, then most recently created."""
        async with self.session_factory() as session:
            result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
            records = [_row_to_record(row) for row in result.scalars().all()]
        return pick_current(records)

    # ── Profile / flag ──────────────────────────────────────────────

    async def get_profile(self, user_id: str) -> UserProfile | None:
        async with self.session_factory() as session:
            result = await session.execute(select(UserProfile).where(UserProfile.user_id == user_id))
            return result.scalar_one_or_none()

    async def get_flag(self, user_id: str) -> bool:
        profile = await self.get_profile(user_id)
        return bool(profile.is_subscribed) if profile is not None else False

    async def ensure_profile(
        self,
        user_id: str,
        *,
        email: str | None = None,
        full_name: str | None = None,
        avatar_url: str | None = None,
    ) -> UserProfile:
        """Create the user's profile on first sight; fill in a missing email on later calls."""
        async with self.session_factory() as session:
            result = await session.execute(select(UserProfile).where(UserProfile.user_id == user_id))
            profile = result.scalar_one_or_none()
            if profile is None:
                profile = UserProfile(
                    user_id=user_id,
                    email=email or None,
                    full_name=full_name or None,
                    avatar_url=avatar_url or None,
                    is_subscribed=False,
                )
                session.add(profile)
                try:
                    await session.commit()
                except IntegrityError:
                    # Provisioned concurrently by another request
                    await session.rollback()
                    result = await session.execute(select(UserProfile).where(UserProfile.user_id == user_id))
                    return result.scalar_one()
                logger.info("user_profile_provisioned", user_id=user_id)
            elif email and not profile.email:
                profile.email = email
                await session.commit()
            return profile

    async def remember_customer(self, user_id: str, customer_id: str) -> None:
        """Store the processor customer id on the user's profile if not already set.

        Best-effort: failures are logged, never raised.
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(UserProfile).where(UserProfile.user_id == user_id))
                profile = result.scalar_one_or_none()
                if profile is None:
                    session.add(UserProfile(user_id=user_id, stripe_customer_id=customer_id, is_subscribed=False))
                elif profile.stripe_customer_id == customer_id:
                    return
                elif profile.stripe_customer_id:
                    logger.warning(
                        "stripe_customer_mismatch",
                        user_id=user_id,
                        stored_customer_id=profile.stripe_customer_id,
                        seen_customer_id=customer_id,
                    )
                    return
                else:
                    profile.stripe_customer_id = customer_id
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "stripe_customer_remember_failed",
                user_id=user_id,
                customer_id=customer_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def sync_flag(self, user_id: str, is_subscribed: bool) -> bool:
        """Rewrite user_profiles.is_subscribed. Logs drift instead of raising."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(UserProfile).where(UserProfile.user_id == user_id))
                profile = result.scalar_one_or_none()
                if profile is None:
                    session.add(UserProfile(user_id=user_id, is_subscribed=is_subscribed))
                else:
                    profile.is_subscribed = is_subscribed
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "entitlement_flag_sync_failed",
                user_id=user_id,
                is_subscribed=is_subscribed,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

        logger.debug("entitlement_flag_synced", user_id=user_id, is_subscribed=is_subscribed)
        return True


class WebhookEventLog:
    """Claims processor event ids so redeliveries of a processed event are skipped."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def claim(self, event_id: str, event_type: str | None = None) -> bool:
        """Return True if the event is new (claimed), False if it was already claimed."""
        async with self.session_factory() as session:
            try:
                session.add(
                    StripeWebhookEvent(event_id=event_id, event_type=event_type, processed_at=datetime.now(UTC))
                )
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def release(self, event_id: str) -> None:
        """Drop a claim so a redelivery of a failed event is processed again."""
        try:
            async with self.session_factory() as session:
                await session.execute(delete(StripeWebhookEvent).where(StripeWebhookEvent.event_id == event_id))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("webhook_event_release_failed", event_id=event_id, error=str(exc))
