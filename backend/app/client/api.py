"""HTTP client for the TuneStream entitlement endpoints."""

from dataclasses import dataclass
from datetime import datetime

import httpx

from app.core.exceptions import TuneStreamError


class EntitlementFetchError(TuneStreamError):
    """Raised when an entitlement endpoint could not be reached or answered an error."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class EntitlementSnapshot:
    status: str | None
    is_subscribed: bool
    current_period_end: datetime | None = None


class EntitlementApiClient:
    """Calls GET /api/subscription and POST /api/subscription/sync for one signed-in user."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def get_entitlement(self) -> EntitlementSnapshot:
        data = await self._request("GET", "/api/subscription")
        period_end = data.get("current_period_end")
        return EntitlementSnapshot(
            status=data.get("status"),
            is_subscribed=bool(data.get("is_subscribed")),
            current_period_end=datetime.fromisoformat(period_end) if period_end else None,
        )

    async def sync(self, session_id: str | None = None, subscription_id: str | None = None) -> dict:
        payload = {"session_id": session_id, "subscription_id": subscription_id}
        return await self._request("POST", "/api/subscription/sync", json=payload)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "EntitlementApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise EntitlementFetchError(f"{method} {path} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            detail = body.get("detail") if isinstance(body, dict) else None
            raise EntitlementFetchError(
                f"{method} {path} returned {response.status_code}: {detail or response.reason_phrase}",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise EntitlementFetchError(
                f"{method} {path} returned an unreadable body",
                status_code=response.status_code,
            )
        return body
