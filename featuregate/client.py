"""
HTTP client for the entitlement API, used by the client-side cache and gate.

Handles:
- Authoritative access checks (POST /features/access)
- Conditional catalog snapshot pulls (GET /features/catalog with If-None-Match)
- The caller's plan profile (GET /users/me)
- Best-effort usage notifications (POST /features/{key}/usage)

Errors are not translated here: callers decide whether a failure is silent
(cache) or a denial (gate).
"""

from __future__ import annotations

import logging

import httpx

from .schemas import AccessVerdict, CatalogSnapshot, ProfileOut

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3.0


class EntitlementApiClient:
    """Thin wrapper around an `httpx.AsyncClient` pointed at the entitlement API."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Args:
            http: Client whose base_url points at the API
            token: Bearer token of the signed-in user, None when signed out
            timeout: Per-request timeout in seconds
        """
        self.http = http
        self.token = token
        self.timeout = timeout

    @property
    def authenticated(self) -> bool:
        return bool(self.token)

    def _headers(self, extra: dict | None = None) -> dict:
        headers = dict(extra or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def check_access(self, feature_key: str) -> AccessVerdict:
        """
        Ask the server for a verdict. The server may charge the usage ledger.

        Raises:
            httpx.HTTPError: transport failure, timeout or non-2xx status
            ValueError: malformed response body
        """
        response = await self.http.post(
            "/features/access",
            json={"featureKey": feature_key},
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return AccessVerdict.model_validate(response.json())

    async def fetch_catalog(self, etag: str | None = None) -> CatalogSnapshot | None:
        """Fetch the catalog snapshot. Returns None when `etag` is still current."""
        extra = {"If-None-Match": f'"{etag}"'} if etag else None
        response = await self.http.get(
            "/features/catalog",
            headers=self._headers(extra),
            timeout=self.timeout,
        )
        if response.status_code == httpx.codes.NOT_MODIFIED:
            return None
        response.raise_for_status()
        return CatalogSnapshot.model_validate(response.json())

    async def fetch_profile(self) -> ProfileOut | None:
        """Fetch the signed-in user's plan. Returns None when signed out."""
        if not self.authenticated:
            return None
        response = await self.http.get(
            "/users/me",
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return ProfileOut.model_validate(response.json())

    async def record_usage(self, feature_key: str, idempotency_key: str) -> bool:
        response = await self.http.post(
            f"/features/{feature_key}/usage",
            headers=self._headers({"Idempotency-Key": idempotency_key}),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return bool(response.json().get("recorded"))
