"""Billing routes — Stripe Checkout, Customer Portal and the webhook endpoint."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from app.api.deps import (
    get_entitlement_store,
    get_ingestion_service,
    get_processor,
)
from app.core.auth import ClerkUser, require_auth
from app.core.config import get_settings
from app.core.exceptions import AuthenticationError, TransientExternalFailure, WebhookNotConfiguredError
from app.domain.entitlement import object_id
from app.integrations.payments import PaymentProcessor
from app.schemas.billing import CheckoutRequest, CheckoutResponse, PortalResponse, WebhookAck
from app.services.entitlement_store import EntitlementStore
from app.services.webhook_ingestion import WebhookIngestionService

logger = structlog.get_logger(__name__)

router = APIRouter()


async def _get_or_create_stripe_customer(
    store: EntitlementStore,
    processor: PaymentProcessor,
    user: ClerkUser,
) -> str:
    """Return the user's Stripe customer id, creating and remembering one if needed."""
    profile = await store.ensure_profile(user.user_id, email=user.email)
    if profile.stripe_customer_id:
        return profile.stripe_customer_id

    customer_id = await processor.create_customer(email=profile.email or user.email, user_id=user.user_id)
    await store.remember_customer(user.user_id, customer_id)

    # A concurrent request may have stored a different customer first
    profile = await store.get_profile(user.user_id)
    if profile is not None and profile.stripe_customer_id:
        return profile.stripe_customer_id
    return customer_id


@router.post("/billing/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    user: ClerkUser = Depends(require_auth),
    store: EntitlementStore = Depends(get_entitlement_store),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Create a subscription-mode Checkout session and return its URL."""
    settings = get_settings()
    try:
        customer_id = await _get_or_create_stripe_customer(store, processor, user)
        session = await processor.create_checkout_session(
            customer_id=customer_id,
            price_id=body.price_id,
            user_id=user.user_id,
            success_url=f"{settings.frontend_url}/?success=subscription&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.frontend_url}/subscription?canceled=true",
        )
    except TransientExternalFailure as exc:
        logger.error("checkout_session_create_failed", user_id=user.user_id, error=str(exc))
        raise HTTPException(status_code=502, detail="Failed to create checkout session")

    logger.info("checkout_session_created", user_id=user.user_id, session_id=session["id"])
    return CheckoutResponse(session_id=session["id"], checkout_url=session["url"])


@router.post("/billing/portal", response_model=PortalResponse)
async def create_portal_session(
    user: ClerkUser = Depends(require_auth),
    store: EntitlementStore = Depends(get_entitlement_store),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Create a Customer Portal session for the caller's active subscription."""
    record = await store.get_by_user(user.user_id)
    if record is None or not record.entitled:
        raise HTTPException(status_code=404, detail="No active subscription found")

    settings = get_settings()
    try:
        profile = await store.get_profile(user.user_id)
        customer_id = profile.stripe_customer_id if profile is not None else None
        if not customer_id:
            subscription = await processor.retrieve_subscription(record.id)
            customer_id = object_id(subscription.get("customer"))
        if not customer_id:
            raise HTTPException(status_code=404, detail="No billing account found")
        portal_url = await processor.create_portal_session(
            customer_id=customer_id,
            return_url=f"{settings.frontend_url}/subscription",
        )
    except TransientExternalFailure as exc:
        logger.error("portal_session_create_failed", user_id=user.user_id, error=str(exc))
        raise HTTPException(status_code=502, detail="Failed to create portal session")

    return PortalResponse(portal_url=portal_url)


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    ingestion: WebhookIngestionService = Depends(get_ingestion_service),
):
    """Receive a Stripe event: verify, apply, acknowledge.

    Skipped and ignored events are acknowledged with 200 so Stripe does not
    redeliver them. Processing errors surface as 5xx so it does.
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        result = await ingestion.ingest(body, signature)
    except WebhookNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except AuthenticationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return WebhookAck(outcome=result.outcome.value)
