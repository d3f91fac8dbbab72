from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from reviewdesk.integrations.review_platform import (
    PlatformAuthError,
    PlatformRequestError,
    ReviewPage,
    ReviewPlatformClient,
)

logger = logging.getLogger(__name__)

GBP_V4_API = "https://mybusiness.googleapis.com/v4"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# refresh a little before Google says the token expires
TOKEN_EXPIRY_SKEW_SEC = 60


class GoogleAuthError(PlatformAuthError):
    """Google integration is missing or needs to be reconnected."""


class GoogleBusinessClient(ReviewPlatformClient):
    """Google Business Profile reviews (legacy v4 API; reviews never moved to v1)."""

    platform = "google"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        refresh_token: str | None,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.timeout = timeout
        self._transport = transport
        self._access_token: str | None = None
        self._access_token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._access_token_expires_at:
            return self._access_token
        if not self.configured:
            raise GoogleAuthError("Google integration is not configured")

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }
        async with self._client() as client:
            try:
                resp = await client.post(GOOGLE_TOKEN_URL, data=data)
            except (httpx.TransportError, httpx.TimeoutException):
                # single retry
                resp = await client.post(GOOGLE_TOKEN_URL, data=data)

        if resp.status_code in (400, 401):
            logger.warning("[google] token refresh rejected: %s %s", resp.status_code, resp.text[:200])
            raise GoogleAuthError("Google integration requires reconnection")
        if resp.status_code >= 400:
            raise PlatformRequestError(
                f"Google token refresh failed: {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text[:400],
            )

        payload = resp.json()
        self._access_token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 3600))
        self._access_token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_SKEW_SEC, 0)
        return self._access_token

    async def verify_credentials(self) -> None:
        await self._get_access_token()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = await self._get_access_token()
        headers = {"Authorization": f"Bearer {token}"}
        async with self._client() as client:
            try:
                resp = await client.request(method, url, headers=headers, **kwargs)
            except (httpx.TransportError, httpx.TimeoutException):
                resp = await client.request(method, url, headers=headers, **kwargs)
        if resp.status_code == 401:
            # token revoked between refresh and call
            self._access_token = None
            raise GoogleAuthError("Google integration requires reconnection")
        return resp

    async def fetch_reviews(
        self,
        resource: str,
        *,
        page_size: int = 50,
        page_token: str | None = None,
        order_by: str | None = None,
    ) -> ReviewPage:
        """Fetch one page of reviews for a location like ``accounts/123/locations/456``."""
        params: dict[str, Any] = {
            "pageSize": page_size,
            "orderBy": order_by or "updateTime desc",
        }
        if page_token:
            params["pageToken"] = page_token

        resp = await self._request("GET", f"{GBP_V4_API}/{resource}/reviews", params=params)
        if resp.status_code >= 400:
            raise PlatformRequestError(
                f"Failed to fetch reviews: {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text[:400],
            )

        data = resp.json()
        return ReviewPage(
            reviews=data.get("reviews") or [],
            next_page_token=data.get("nextPageToken") or None,
            total_review_count=data.get("totalReviewCount"),
            average_rating=data.get("averageRating"),
        )

    async def post_reply(self, reply_target: str, text: str) -> None:
        """Create or replace the owner reply on ``accounts/../locations/../reviews/..``."""
        resp = await self._request("PUT", f"{GBP_V4_API}/{reply_target}/reply", json={"comment": text})
        if resp.status_code >= 400:
            raise PlatformRequestError(
                f"Failed to reply to review: {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text[:400],
            )
