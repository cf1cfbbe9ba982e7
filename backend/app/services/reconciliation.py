"""ReconciliationService — synchronous, on-demand entitlement resolution.

Bridges the gap between a user finishing checkout and the processor's
asynchronous webhook arriving. Resolution order:

1. Stored entitling record (fast path, no processor calls; a drifted flag is rewritten)
2. Checkout session hint -> subscription (retried fetch)
3. Subscription id hint -> subscription
4. Customer search (stored customer id, email, metadata.userId) -> newest entitling subscription

The first subscription found is written back to the store. Lookup failures are
logged and fall through to the next strategy; only when every attempted lookup
failed and nothing is stored does the caller get EntitlementUndeterminedError.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import structlog

from app.core.exceptions import (
    EntitlementUndeterminedError,
    SubscriptionNotFoundError,
    TransientExternalFailure,
)
from app.domain.entitlement import (
    EntitlementRecord,
    checkout_user_id,
    is_entitled,
    metadata_user_id,
    object_id,
    record_from_processor,
)
from app.integrations.payments import PaymentProcessor, fetch_subscription_with_retry
from app.metrics.cloudwatch import emit_business_event
from app.schemas.billing import (
    DebugDatabaseView,
    DebugStoredSubscription,
    DebugStripeSubscription,
    DebugStripeView,
    SubscriptionDebugResponse,
)
from app.services.entitlement_store import EntitlementStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReconcileHint:
    """What the caller knows about a just-completed checkout, if anything."""

    checkout_session_id: str | None = None
    subscription_id: str | None = None


@dataclass(frozen=True)
class ReconcileContext:
    user_id: str
    hint: ReconcileHint = field(default_factory=ReconcileHint)
    email: str | None = None
    customer_id: str | None = None


@dataclass(frozen=True)
class ReconcileResult:
    record: EntitlementRecord | None
    entitled: bool
    synced: bool
    source: str | None = None


@dataclass(frozen=True)
class EntitlementView:
    """Read-only projection served to the UI cache."""

    status: str | None
    current_period_end: datetime | None
    is_subscribed: bool


class LookupStrategy(Protocol):
    """One step of the reconciliation waterfall."""

    name: str

    def applies(self, ctx: ReconcileContext) -> bool: ...

    async def find(self, ctx: ReconcileContext) -> dict | None: ...


def _belongs_to_other_user(user_id: str, owner: str | None) -> bool:
    return owner is not None and owner != user_id


class CheckoutSessionLookup:
    name = "checkout_session"

    def __init__(self, processor: PaymentProcessor):
        self.processor = processor

    def applies(self, ctx: ReconcileContext) -> bool:
        return bool(ctx.hint.checkout_session_id)

    async def find(self, ctx: ReconcileContext) -> dict | None:
        session = await self.processor.retrieve_checkout_session(ctx.hint.checkout_session_id)
        if _belongs_to_other_user(ctx.user_id, checkout_user_id(session)):
            logger.warning(
                "checkout_session_owner_mismatch",
                user_id=ctx.user_id,
                session_id=ctx.hint.checkout_session_id,
            )
            return None

        subscription_id = object_id(session.get("subscription"))
        if not subscription_id:
            return None
        return await fetch_subscription_with_retry(self.processor, subscription_id)


class SubscriptionIdLookup:
    name = "subscription_id"

    def __init__(self, processor: PaymentProcessor):
        self.processor = processor

    def applies(self, ctx: ReconcileContext) -> bool:
        return bool(ctx.hint.subscription_id)

    async def find(self, ctx: ReconcileContext) -> dict | None:
        subscription = await self.processor.retrieve_subscription(ctx.hint.subscription_id)
        if _belongs_to_other_user(ctx.user_id, metadata_user_id(subscription.get("metadata"))):
            logger.warning(
                "subscription_owner_mismatch",
                user_id=ctx.user_id,
                subscription_id=ctx.hint.subscription_id,
            )
            return None
        return subscription


class CustomerSearch:
    name = "customer_search"

    def __init__(self, processor: PaymentProcessor):
        self.processor = processor

    def applies(self, ctx: ReconcileContext) -> bool:
        return True

    async def find(self, ctx: ReconcileContext) -> dict | None:
        if ctx.customer_id:
            customer_ids = [ctx.customer_id]
        else:
            customer_ids = await self.processor.find_customer_ids(email=ctx.email, user_id=ctx.user_id)

        candidates: list[dict] = []
        for customer_id in customer_ids:
            subscriptions = await self.processor.list_subscriptions(customer_id)
            candidates.extend(sub for sub in subscriptions if is_entitled(sub.get("status")))

        if not candidates:
            return None
        return max(candidates, key=lambda sub: sub.get("created") or 0)


class ReconciliationService:
    """Resolves authoritative entitlement for a user and writes it back to the store."""

    def __init__(
        self,
        store: EntitlementStore,
        processor: PaymentProcessor,
        strategies: list[LookupStrategy] | None = None,
    ):
        self.store = store
        self.processor = processor
        self.strategies = strategies if strategies is not None else [
            CheckoutSessionLookup(processor),
            SubscriptionIdLookup(processor),
            CustomerSearch(processor),
        ]

    async def reconcile(
        self,
        user_id: str,
        hint: ReconcileHint | None = None,
        email: str | None = None,
    ) -> ReconcileResult:
        """Return the user's authoritative entitlement, syncing from the processor if needed.

        Never downgrades a stored record when nothing is found.

        Raises:
            EntitlementUndeterminedError: every attempted lookup failed and no record is stored
            PersistenceFailure: a found subscription could not be written
        """
        existing = await self.store.get_by_user(user_id)
        if existing is not None and existing.entitled:
            logger.info("reconcile_fast_path", user_id=user_id, subscription_id=existing.id)
            await self._heal_flag(user_id, existing)
            return ReconcileResult(record=existing, entitled=True, synced=False, source="store")

        profile = await self.store.get_profile(user_id)
        ctx = ReconcileContext(
            user_id=user_id,
            hint=hint or ReconcileHint(),
            email=email or (profile.email if profile is not None else None),
            customer_id=profile.stripe_customer_id if profile is not None else None,
        )

        attempted = 0
        failed = 0
        for strategy in self.strategies:
            if not strategy.applies(ctx):
                continue
            attempted += 1
            try:
                found = await strategy.find(ctx)
            except TransientExternalFailure as exc:
                failed += 1
                logger.warning(
                    "reconcile_strategy_failed",
                    user_id=user_id,
                    strategy=strategy.name,
                    error=str(exc),
                )
                continue

            if found is None:
                logger.debug("reconcile_strategy_empty", user_id=user_id, strategy=strategy.name)
                continue

            record = await self._store_found(user_id, found)
            logger.info(
                "reconcile_synced",
                user_id=user_id,
                strategy=strategy.name,
                subscription_id=record.id,
                status=record.status,
            )
            await emit_business_event("entitlement_reconciled", source=strategy.name)
            return ReconcileResult(record=record, entitled=record.entitled, synced=True, source=strategy.name)

        if attempted and failed == attempted and existing is None:
            logger.error("reconcile_undetermined", user_id=user_id, attempts=attempted)
            raise EntitlementUndeterminedError(user_id, attempted)

        logger.info("reconcile_no_entitlement", user_id=user_id, attempts=attempted, failures=failed)
        if existing is not None:
            await self._heal_flag(user_id, existing)
        return ReconcileResult(record=existing, entitled=False, synced=False, source=None)

    async def confirm_checkout(self, user_id: str, session_id: str) -> EntitlementRecord:
        """Strict post-checkout path: the session must resolve to a subscription.

        Raises:
            SubscriptionNotFoundError: session carries no subscription (or belongs to someone else)
            TransientExternalFailure: processor unreachable after the bounded retries
        """
        session = await self.processor.retrieve_checkout_session(session_id)
        subscription_id = object_id(session.get("subscription"))
        if not subscription_id or _belongs_to_other_user(user_id, checkout_user_id(session)):
            raise SubscriptionNotFoundError(session_id, session.get("status"))

        subscription = await fetch_subscription_with_retry(self.processor, subscription_id)
        record = await self._store_found(user_id, subscription, customer_hint=session.get("customer"))
        if record.entitled:
            await emit_business_event("subscription_activated", source="checkout_success")
        return record

    async def read_entitlement(self, user_id: str) -> EntitlementView:
        """Current record plus stored flag, without touching the processor."""
        record = await self.store.get_by_user(user_id)
        is_subscribed = await self.store.get_flag(user_id)
        return EntitlementView(
            status=record.status if record is not None else None,
            current_period_end=record.current_period_end if record is not None else None,
            is_subscribed=is_subscribed,
        )

    async def diagnose(self, user_id: str, email: str | None = None) -> SubscriptionDebugResponse:
        """Stored state next to the processor's view, for support tooling."""
        record = await self.store.get_by_user(user_id)
        profile = await self.store.get_profile(user_id)
        email = email or (profile.email if profile is not None else None)

        stripe_view = DebugStripeView()
        try:
            if profile is not None and profile.stripe_customer_id:
                customer_ids = [profile.stripe_customer_id]
            else:
                customer_ids = await self.processor.find_customer_ids(email=email, user_id=user_id)
            for customer_id in customer_ids:
                for sub in await self.processor.list_subscriptions(customer_id):
                    stripe_view.subscriptions.append(
                        DebugStripeSubscription(
                            id=sub.get("id"),
                            status=sub.get("status"),
                            customer=object_id(sub.get("customer")),
                        )
                    )
        except TransientExternalFailure as exc:
            stripe_view.error = str(exc)

        stored = None
        if record is not None:
            stored = DebugStoredSubscription(
                id=record.id,
                status=record.status,
                current_period_end=record.current_period_end,
                cancel_at_period_end=record.cancel_at_period_end,
            )
        return SubscriptionDebugResponse(
            user_id=user_id,
            email=email,
            database=DebugDatabaseView(
                subscription=stored,
                is_subscribed=bool(profile.is_subscribed) if profile is not None else False,
                stripe_customer_id=profile.stripe_customer_id if profile is not None else None,
            ),
            stripe=stripe_view,
        )

    async def _heal_flag(self, user_id: str, current: EntitlementRecord) -> None:
        """Rewrite the flag when it disagrees with the current stored record."""
        flag = await self.store.get_flag(user_id)
        if flag == current.entitled:
            return
        logger.warning(
            "entitlement_flag_drift",
            user_id=user_id,
            subscription_id=current.id,
            status=current.status,
            flag=flag,
        )
        await self.store.sync_flag(user_id, current.entitled)

    async def _store_found(self, user_id: str, subscription: dict, customer_hint=None) -> EntitlementRecord:
        record = record_from_processor(subscription, user_id)
        await self.store.upsert(record)
        customer_id = object_id(customer_hint) or object_id(subscription.get("customer"))
        if customer_id:
            await self.store.remember_customer(user_id, customer_id)
        return record
