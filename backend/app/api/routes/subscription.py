"""Subscription routes — entitlement read model, reconciliation trigger, checkout confirmation."""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_reconciliation_service
from app.core.auth import ClerkUser, require_auth
from app.core.exceptions import (
    EntitlementUndeterminedError,
    SubscriptionNotFoundError,
    TransientExternalFailure,
)
from app.schemas.billing import (
    CheckoutSuccessRequest,
    CheckoutSuccessResponse,
    EntitlementResponse,
    SubscriptionDebugResponse,
    SyncRequest,
    SyncResponse,
)
from app.services.reconciliation import ReconcileHint, ReconciliationService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("", response_model=EntitlementResponse)
async def get_entitlement(
    user: ClerkUser = Depends(require_auth),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Return the caller's stored status, period end and is_subscribed flag."""
    view = await service.read_entitlement(user.user_id)
    return EntitlementResponse(
        status=view.status,
        current_period_end=view.current_period_end,
        is_subscribed=view.is_subscribed,
    )


@router.post("/sync", response_model=SyncResponse)
async def sync_subscription(
    body: SyncRequest | None = None,
    user: ClerkUser = Depends(require_auth),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Reconcile the caller's entitlement with Stripe, using any checkout hint provided."""
    body = body or SyncRequest()
    hint = ReconcileHint(checkout_session_id=body.session_id, subscription_id=body.subscription_id)

    try:
        result = await service.reconcile(user.user_id, hint, email=user.email)
    except EntitlementUndeterminedError:
        raise HTTPException(status_code=503, detail="Could not determine subscription status. Please retry.")

    return SyncResponse(
        is_subscribed=result.entitled,
        synced=result.synced,
        source=result.source,
        subscription_id=result.record.id if result.record is not None else None,
        status=result.record.status if result.record is not None else None,
    )


@router.post("/checkout-success", response_model=CheckoutSuccessResponse)
async def checkout_success(
    body: CheckoutSuccessRequest,
    user: ClerkUser = Depends(require_auth),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Store the subscription behind a completed Checkout session right away."""
    if not body.session_id:
        raise HTTPException(status_code=400, detail="Session ID is required")

    try:
        record = await service.confirm_checkout(user.user_id, body.session_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except TransientExternalFailure as exc:
        logger.error("checkout_success_fetch_failed", user_id=user.user_id, session_id=body.session_id, error=str(exc))
        raise HTTPException(status_code=502, detail="Failed to retrieve subscription")

    logger.info(
        "checkout_success_stored",
        user_id=user.user_id,
        subscription_id=record.id,
        status=record.status,
    )
    return CheckoutSuccessResponse(subscription_id=record.id, status=record.status, is_subscribed=record.entitled)


@router.get("/debug", response_model=SubscriptionDebugResponse)
async def debug_subscription(
    user: ClerkUser = Depends(require_auth),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Stored record and flag next to Stripe's view of the caller's subscriptions."""
    return await service.diagnose(user.user_id, email=user.email)
