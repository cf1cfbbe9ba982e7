"""FastAPI dependency providers for the entitlement services."""

from fastapi import Depends, HTTPException

from app.core.auth import ClerkUser, require_auth
from app.db.base import get_session_factory
from app.integrations.payments import PaymentProcessor, StripeProcessor
from app.services.entitlement_store import EntitlementStore, WebhookEventLog
from app.services.reconciliation import ReconciliationService
from app.services.webhook_ingestion import WebhookIngestionService


def get_processor() -> PaymentProcessor:
    return StripeProcessor()


def get_entitlement_store() -> EntitlementStore:
    return EntitlementStore(get_session_factory())


def get_webhook_event_log() -> WebhookEventLog:
    return WebhookEventLog(get_session_factory())


def get_reconciliation_service(
    store: EntitlementStore = Depends(get_entitlement_store),
    processor: PaymentProcessor = Depends(get_processor),
) -> ReconciliationService:
    return ReconciliationService(store, processor)


def get_ingestion_service(
    store: EntitlementStore = Depends(get_entitlement_store),
    processor: PaymentProcessor = Depends(get_processor),
    event_log: WebhookEventLog = Depends(get_webhook_event_log),
) -> WebhookIngestionService:
    return WebhookIngestionService(store, processor, event_log=event_log)


async def require_premium(
    user: ClerkUser = Depends(require_auth),
    store: EntitlementStore = Depends(get_entitlement_store),
) -> ClerkUser:
    """Paywall gate for premium actions.

    Reads the stored record only; browsing and playback never depend on it.
    Answers 402 with a structured body when the caller is not entitled.
    """
    record = await store.get_by_user(user.user_id)
    if record is None or not record.entitled:
        raise HTTPException(
            status_code=402,
            detail={
                "code": "subscription_required",
                "message": "A premium subscription is required for this action.",
                "upgrade_url": "/subscription",
            },
        )
    return user
