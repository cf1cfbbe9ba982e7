"""Pydantic schemas for billing and subscription endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class CheckoutRequest(BaseModel):
    price_id: str = Field(..., min_length=1)


class CheckoutResponse(BaseModel):
    session_id: str
    checkout_url: str


class PortalResponse(BaseModel):
    portal_url: str


class EntitlementResponse(BaseModel):
    """What the UI cache reads: current record status plus the stored flag."""

    status: str | None = None
    current_period_end: datetime | None = None
    is_subscribed: bool = False


class SyncRequest(BaseModel):
    """Optional hints from the client after returning from checkout."""

    session_id: str | None = None
    subscription_id: str | None = None


class SyncResponse(BaseModel):
    is_subscribed: bool
    synced: bool
    source: str | None = None
    subscription_id: str | None = None
    status: str | None = None


class CheckoutSuccessRequest(BaseModel):
    session_id: str | None = None


class CheckoutSuccessResponse(BaseModel):
    subscription_id: str
    status: str
    is_subscribed: bool


class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: str


class DebugStoredSubscription(BaseModel):
    id: str
    status: str
    current_period_end: datetime
    cancel_at_period_end: bool = False


class DebugDatabaseView(BaseModel):
    subscription: DebugStoredSubscription | None = None
    is_subscribed: bool = False
    stripe_customer_id: str | None = None


class DebugStripeSubscription(BaseModel):
    id: str | None = None
    status: str | None = None
    customer: str | None = None


class DebugStripeView(BaseModel):
    subscriptions: list[DebugStripeSubscription] = Field(default_factory=list)
    error: str | None = None


class SubscriptionDebugResponse(BaseModel):
    """Stored state next to Stripe's view; `stripe.error` is set when Stripe could not be reached."""

    user_id: str
    email: str | None = None
    database: DebugDatabaseView
    stripe: DebugStripeView
