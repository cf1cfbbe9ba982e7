"""Payment processor integration (Stripe).

The reconciliation core only depends on the PaymentProcessor protocol:
- fetch subscription / checkout session by id
- list subscriptions by customer, find customers by email or user metadata
- create customers, checkout sessions and portal sessions
- verify webhook signatures

StripeProcessor implements it with the async Stripe SDK. Every SDK error is
surfaced as TransientExternalFailure so callers can decide to retry or fall through.
"""

from typing import Any, Protocol

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from app.core.config import get_settings
from app.core.exceptions import AuthenticationError, TransientExternalFailure
from app.domain.entitlement import metadata_user_id

logger = structlog.get_logger(__name__)


class PaymentProcessor(Protocol):
    """Outbound query interface to the processor."""

    def verify_event(self, payload: bytes, signature: str, secret: str) -> dict: ...

    async def retrieve_subscription(self, subscription_id: str) -> dict: ...

    async def retrieve_checkout_session(self, session_id: str) -> dict: ...

    async def list_subscriptions(self, customer_id: str) -> list[dict]: ...

    async def find_customer_ids(self, *, email: str | None, user_id: str) -> list[str]: ...

    async def create_customer(self, *, email: str | None, user_id: str) -> str: ...

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> dict: ...

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str: ...


def as_plain_dict(obj: Any) -> dict:
    """Convert a StripeObject (or a plain dict from tests) into nested dicts."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeProcessor:
    """PaymentProcessor backed by the async Stripe SDK."""

    def __init__(self, api_key: str | None = None):
        settings = get_settings()
        self.settings = settings
        stripe.api_key = api_key or settings.stripe_secret_key

    def verify_event(self, payload: bytes, signature: str, secret: str) -> dict:
        """Verify the Stripe-Signature header and return the event as a dict.

        Raises:
            AuthenticationError: payload is not valid JSON or the signature does not match
        """
        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except ValueError as exc:
            raise AuthenticationError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationError("Invalid signature") from exc
        return as_plain_dict(event)

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        try:
            subscription = await stripe.Subscription.retrieve_async(subscription_id)
        except stripe.StripeError as exc:
            raise TransientExternalFailure("retrieve_subscription", exc) from exc
        return as_plain_dict(subscription)

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        try:
            session = await stripe.checkout.Session.retrieve_async(session_id)
        except stripe.StripeError as exc:
            raise TransientExternalFailure("retrieve_checkout_session", exc) from exc
        return as_plain_dict(session)

    async def list_subscriptions(self, customer_id: str) -> list[dict]:
        try:
            result = await stripe.Subscription.list_async(
                customer=customer_id,
                status="all",
                limit=self.settings.subscription_list_limit,
            )
        except stripe.StripeError as exc:
            raise TransientExternalFailure("list_subscriptions", exc) from exc
        return [as_plain_dict(sub) for sub in result.data]

    async def find_customer_ids(self, *, email: str | None, user_id: str) -> list[str]:
        """Find customers by email first, then by metadata.userId on a bounded scan."""
        try:
            if email:
                by_email = await stripe.Customer.list_async(email=email, limit=1)
                if by_email.data:
                    return [as_plain_dict(c)["id"] for c in by_email.data]

            scanned = await stripe.Customer.list_async(limit=self.settings.customer_scan_limit)
        except stripe.StripeError as exc:
            raise TransientExternalFailure("find_customers", exc) from exc

        return [
            customer["id"]
            for customer in (as_plain_dict(c) for c in scanned.data)
            if metadata_user_id(customer.get("metadata")) == user_id
        ]

    async def create_customer(self, *, email: str | None, user_id: str) -> str:
        params: dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        try:
            customer = await stripe.Customer.create_async(**params)
        except stripe.StripeError as exc:
            raise TransientExternalFailure("create_customer", exc) from exc
        return customer.id

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> dict:
        try:
            session = await stripe.checkout.Session.create_async(
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                metadata={"userId": user_id},
                subscription_data={"metadata": {"userId": user_id}},
            )
        except stripe.StripeError as exc:
            raise TransientExternalFailure("create_checkout_session", exc) from exc
        return {"id": session.id, "url": session.url}

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        try:
            portal = await stripe.billing_portal.Session.create_async(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as exc:
            raise TransientExternalFailure("create_portal_session", exc) from exc
        return portal.url


async def fetch_subscription_with_retry(
    processor: PaymentProcessor,
    subscription_id: str,
    attempts: int | None = None,
    delay_seconds: float | None = None,
) -> dict:
    """Fetch a subscription, retrying a fixed number of times with a fixed delay.

    Absorbs the processor's own consistency window right after checkout, when a
    freshly created subscription may not be queryable yet.

    Raises:
        TransientExternalFailure: every attempt failed
    """
    settings = get_settings()
    attempts = attempts if attempts is not None else settings.subscription_fetch_attempts
    delay_seconds = delay_seconds if delay_seconds is not None else settings.subscription_fetch_delay_seconds

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(TransientExternalFailure),
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_fixed(delay_seconds),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "subscription_fetch_retrying",
            subscription_id=subscription_id,
            attempt=rs.attempt_number,
            error=str(rs.outcome.exception()),
        ),
    ):
        with attempt:
            return await processor.retrieve_subscription(subscription_id)

    raise TransientExternalFailure("retrieve_subscription")  # pragma: no cover
