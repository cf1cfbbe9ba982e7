"""WebhookIngestionService — applies processor events to the entitlement store.

Events arrive out of order and may be redelivered. Each handled event fully
replaces the stored snapshot, so replays and reorderings converge on whichever
write lands last. Events that can never succeed (no owner, no subscription
reference) are acknowledged as skipped so the processor stops redelivering.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from app.core.config import get_settings
from app.core.exceptions import AuthenticationError, NotRetryableSkip, WebhookNotConfiguredError
from app.domain.entitlement import (
    checkout_user_id,
    metadata_user_id,
    object_id,
    record_from_processor,
)
from app.integrations.payments import PaymentProcessor, fetch_subscription_with_retry
from app.metrics.cloudwatch import emit_business_event
from app.services.entitlement_store import EntitlementStore, WebhookEventLog

logger = structlog.get_logger(__name__)


class StripeEventType:
    """Processor event types we act on."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class IngestionOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class IngestionResult:
    outcome: IngestionOutcome
    event_id: str | None
    event_type: str | None
    user_id: str | None = None
    subscription_id: str | None = None
    reason: str | None = None


Handler = Callable[[str | None, dict], Awaitable[IngestionResult]]


class WebhookIngestionService:
    """Verifies processor events and applies them to the EntitlementStore."""

    def __init__(
        self,
        store: EntitlementStore,
        processor: PaymentProcessor,
        event_log: WebhookEventLog | None = None,
        webhook_secret: str | None = None,
    ):
        self.store = store
        self.processor = processor
        self.event_log = event_log
        self.webhook_secret = webhook_secret
        self._handlers: dict[str, Handler] = {
            StripeEventType.CHECKOUT_COMPLETED: self._on_checkout_completed,
            StripeEventType.SUBSCRIPTION_CREATED: self._on_subscription_updated,
            StripeEventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            StripeEventType.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    def verify(self, payload: bytes, signature: str | None) -> dict:
        """Check the signature against the shared secret and return the event.

        Raises:
            WebhookNotConfiguredError: no signing secret configured (fail closed)
            AuthenticationError: missing or invalid signature, or unparseable payload
        """
        secret = self.webhook_secret if self.webhook_secret is not None else get_settings().stripe_webhook_secret
        if not secret:
            logger.error("stripe_webhook_secret_missing")
            raise WebhookNotConfiguredError("Stripe webhook endpoint is not configured")
        if not signature:
            raise AuthenticationError("Missing stripe-signature header")

        try:
            return self.processor.verify_event(payload, signature, secret)
        except AuthenticationError as exc:
            logger.warning("stripe_webhook_rejected", reason=str(exc))
            raise

    async def ingest(self, payload: bytes, signature: str | None) -> IngestionResult:
        """Verify, then handle. No state is touched when verification fails."""
        event = self.verify(payload, signature)
        return await self.handle(event)

    async def handle(self, event: dict) -> IngestionResult:
        """Apply a verified event.

        Unknown event types are acknowledged without action. A failure releases
        the event claim and propagates, so the redelivery is processed again.
        """
        event_id = event.get("id")
        event_type = event.get("type")
        data = event.get("data") or {}
        obj = data.get("object") or {}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_ignored", event_id=event_id, event_type=event_type)
            return IngestionResult(IngestionOutcome.IGNORED, event_id, event_type)

        claimed = False
        if event_id and self.event_log is not None:
            claimed = await self.event_log.claim(event_id, event_type)
            if not claimed:
                logger.info("stripe_duplicate_event_ignored", event_id=event_id, event_type=event_type)
                return IngestionResult(IngestionOutcome.DUPLICATE, event_id, event_type)

        logger.info("stripe_webhook_received", event_id=event_id, event_type=event_type)
        try:
            return await handler(event_id, obj)
        except NotRetryableSkip as skip:
            logger.warning(
                "webhook_event_skipped",
                event_id=event_id,
                event_type=event_type,
                reason=skip.reason,
                object_id=obj.get("id"),
            )
            return IngestionResult(IngestionOutcome.SKIPPED, event_id, event_type, reason=skip.reason)
        except Exception:
            if claimed:
                await self.event_log.release(event_id)
            raise

    # ── Handlers ────────────────────────────────────────────────────

    async def _on_checkout_completed(self, event_id: str | None, session: dict) -> IngestionResult:
        user_id = checkout_user_id(session)
        subscription_id = object_id(session.get("subscription"))

        if not user_id:
            raise NotRetryableSkip("checkout session has no user reference", event_id)
        if not subscription_id:
            raise NotRetryableSkip("checkout session has no subscription", event_id)

        subscription = await fetch_subscription_with_retry(self.processor, subscription_id)
        record = record_from_processor(subscription, user_id)
        await self.store.upsert(record)

        customer_id = object_id(session.get("customer")) or object_id(subscription.get("customer"))
        if customer_id:
            await self.store.remember_customer(user_id, customer_id)

        logger.info(
            "checkout_subscription_stored",
            user_id=user_id,
            subscription_id=record.id,
            status=record.status,
        )
        if record.entitled:
            await emit_business_event("subscription_activated", source="webhook")

        return IngestionResult(
            IngestionOutcome.APPLIED,
            event_id,
            StripeEventType.CHECKOUT_COMPLETED,
            user_id=user_id,
            subscription_id=record.id,
        )

    async def _on_subscription_updated(self, event_id: str | None, subscription: dict) -> IngestionResult:
        subscription_id = object_id(subscription)
        if not subscription_id:
            raise NotRetryableSkip("subscription event has no subscription id", event_id)

        user_id = await self._resolve_owner(subscription_id, subscription)
        if not user_id:
            raise NotRetryableSkip("no owner for subscription", event_id)

        record = record_from_processor(subscription, user_id)
        await self.store.upsert(record)

        return IngestionResult(
            IngestionOutcome.APPLIED,
            event_id,
            StripeEventType.SUBSCRIPTION_UPDATED,
            user_id=user_id,
            subscription_id=record.id,
        )

    async def _on_subscription_deleted(self, event_id: str | None, subscription: dict) -> IngestionResult:
        subscription_id = object_id(subscription)
        if not subscription_id:
            raise NotRetryableSkip("subscription event has no subscription id", event_id)

        user_id = await self._resolve_owner(subscription_id, subscription)
        if not user_id:
            raise NotRetryableSkip("no owner for subscription", event_id)

        await self.store.delete(subscription_id, user_id=user_id)
        await emit_business_event("subscription_canceled", source="webhook")

        return IngestionResult(
            IngestionOutcome.APPLIED,
            event_id,
            StripeEventType.SUBSCRIPTION_DELETED,
            user_id=user_id,
            subscription_id=subscription_id,
        )

    async def _resolve_owner(self, subscription_id: str, subscription: dict) -> str | None:
        """Owner from event metadata, else from the stored record with the same id."""
        user_id = metadata_user_id(subscription.get("metadata"))
        if user_id:
            return user_id
        existing = await self.store.get_by_id(subscription_id)
        return existing.user_id if existing is not None else None
