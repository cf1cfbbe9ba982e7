"""Clerk session authentication — the ``require_auth`` dependency used by every user-facing route.

A request is accepted when its bearer token is an RS256 Clerk session JWT that
was issued by our Clerk instance, authorized for one of our frontends (``azp``)
and, when audiences are configured, addressed to us (``aud``). The first time a
user is seen by this process their profile row is provisioned, which is where
reconciliation later finds the email to search Stripe customers by.
"""

import base64
import binascii
from dataclasses import dataclass
from functools import lru_cache

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from app.core.config import Settings, get_settings

_bearer_scheme = HTTPBearer(auto_error=False)

# User ids provisioned by this process
_provisioned_cache: set[str] = set()

_REQUIRED_CLAIMS = ["sub", "exp", "nbf", "iat"]


@dataclass(frozen=True)
class ClerkUser:
    """Caller identity from a verified session token."""

    user_id: str
    claims: dict

    @property
    def email(self) -> str | None:
        return self.claims.get("email") or None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail)


def clerk_domain(publishable_key: str) -> str:
    """Frontend API domain encoded in a ``pk_test_...`` / ``pk_live_...`` key.

    Raises:
        ValueError: the key is not a Clerk publishable key
    """
    prefix, _, encoded = publishable_key.partition("_")
    _, _, encoded = encoded.partition("_")
    if prefix != "pk" or not encoded:
        raise ValueError("Not a Clerk publishable key")

    encoded = encoded.rstrip("=")
    try:
        decoded = base64.b64decode(encoded + "=" * (-len(encoded) % 4)).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError("Clerk publishable key does not decode") from exc

    domain = decoded.rstrip("$")
    if not domain:
        raise ValueError("Clerk publishable key names no domain")
    return domain


@lru_cache
def _jwks_client() -> PyJWKClient:
    domain = clerk_domain(get_settings().clerk_publishable_key)
    return PyJWKClient(f"https://{domain}/.well-known/jwks.json", cache_keys=True, lifespan=300)


def verify_session_token(token: str) -> ClerkUser:
    """Check the token's signature and time claims.

    Raises:
        HTTPException: 401 describing the first failed check
    """
    try:
        key = _jwks_client().get_signing_key_from_jwt(token).key
        claims = pyjwt.decode(
            token,
            key,
            algorithms=["RS256"],
            options={"verify_aud": False, "require": _REQUIRED_CLAIMS},
        )
    except pyjwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except pyjwt.ImmatureSignatureError:
        raise _unauthorized("Token not yet valid")
    except pyjwt.MissingRequiredClaimError as exc:
        raise _unauthorized(f"Missing required claim: {exc.claim}")
    except pyjwt.PyJWTError as exc:
        raise _unauthorized(f"Invalid token: {exc}")

    if not claims.get("sub"):
        raise _unauthorized("Token missing sub claim")
    return ClerkUser(user_id=claims["sub"], claims=claims)


def _audiences(aud: object) -> set[str]:
    if isinstance(aud, str):
        return {aud}
    if isinstance(aud, list) and aud and all(isinstance(item, str) for item in aud):
        return set(aud)
    raise _unauthorized("Missing aud claim" if aud is None else "Invalid aud claim format")


def check_session_claims(claims: dict, settings: Settings) -> None:
    """Issuer, authorized party and (optional) audience checks for our Clerk instance.

    Raises:
        HTTPException: 401 on a mismatch, 500 when the publishable key is unusable
    """
    try:
        issuer = f"https://{clerk_domain(settings.clerk_publishable_key)}"
    except ValueError as exc:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured") from exc
    if claims.get("iss") != issuer:
        raise _unauthorized("Invalid issuer (iss mismatch)")

    azp = claims.get("azp")
    if not azp:
        raise _unauthorized("Missing azp claim")
    if azp not in settings.clerk_allowed_origins:
        raise _unauthorized("Unauthorized origin (azp mismatch)")

    allowed_audiences = set(settings.clerk_allowed_audiences)
    if allowed_audiences and not _audiences(claims.get("aud")) & allowed_audiences:
        raise _unauthorized("Unauthorized audience (aud mismatch)")


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> ClerkUser:
    """Authenticate the caller and make sure their profile row exists."""
    if credentials is None:
        raise _unauthorized("Missing authorization header")

    user = verify_session_token(credentials.credentials)
    check_session_claims(user.claims, get_settings())

    if user.user_id not in _provisioned_cache:
        from app.core.provisioning import provision_user_on_first_login

        await provision_user_on_first_login(user.user_id, user.claims)
        _provisioned_cache.add(user.user_id)

    # Read by the exception handlers when logging
    request.state.user_id = user.user_id
    return user
