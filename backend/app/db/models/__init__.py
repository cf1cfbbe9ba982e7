"""Re-export all models so Base.metadata sees them."""

from app.db.models.stripe_event import StripeWebhookEvent
from app.db.models.subscription import Subscription
from app.db.models.user_profile import UserProfile

__all__ = [
    "StripeWebhookEvent",
    "Subscription",
    "UserProfile",
]
