"""User provisioning on first authenticated request.

Creates the user_profiles row (with is_subscribed=False) that carries the
entitlement flag and the email used by reconciliation's customer search.
Idempotent: repeat calls only backfill a missing email.
"""

from app.db.base import get_session_factory
from app.db.models.user_profile import UserProfile
from app.services.entitlement_store import EntitlementStore


async def provision_user_on_first_login(
    user_id: str,
    jwt_claims: dict,
    store: EntitlementStore | None = None,
) -> UserProfile:
    """Ensure a profile exists for the Clerk user.

    Args:
        user_id: Clerk user ID from JWT
        jwt_claims: JWT claims dict containing email, name, image_url
        store: Optional EntitlementStore for testing (if None, uses the global session factory)
    """
    if store is None:
        store = EntitlementStore(get_session_factory())

    return await store.ensure_profile(
        user_id,
        email=jwt_claims.get("email"),
        full_name=jwt_claims.get("name"),
        avatar_url=jwt_claims.get("image_url"),
    )
