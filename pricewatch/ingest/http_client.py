"""HTTP client for competitor storefronts with status-aware error handling.

Competitor calls are never retried here: a failed fetch is counted against the
product and the run moves on. The configured delay before each request paces
traffic to the storefront.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from pricewatch.config import settings

logger = logging.getLogger(__name__)

# Transport failures that map to TransientFetchError
TRANSIENT_EXC = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.ReadError,
)


class FetchError(RuntimeError):
    """Base class for competitor fetch failures."""
    pass


class BlockedError(FetchError):
    """Raised when access is blocked (401, 403)."""
    pass


class PermanentURLError(FetchError):
    """Raised when URL is permanently invalid (404)."""
    pass


class TransientFetchError(FetchError):
    """Raised on 5xx, timeouts, transport errors and unreadable bodies."""
    pass


class RateLimitedError(FetchError):
    """Raised when rate limited (429)."""

    def __init__(self, url: str, retry_after: Optional[str] = None):
        super().__init__(f"Rate limited: {url}")
        self.retry_after = retry_after


def default_headers() -> dict[str, str]:
    """Get default browser-like headers."""
    return {
        "User-Agent": settings.http_user_agent,
        "Accept": "application/json, text/html;q=0.9, */*;q=0.8",
        "Accept-Language": "es-CO, es;q=0.9, en;q=0.8",
        "Cache-Control": "no-cache",
    }


def default_timeout() -> httpx.Timeout:
    """Bounded per-call timeout from settings."""
    return httpx.Timeout(
        connect=settings.http_connect_timeout,
        read=settings.http_read_timeout,
        write=settings.http_connect_timeout,
        pool=settings.http_connect_timeout,
    )


def raise_for_status(resp: httpx.Response, name: str) -> None:
    """Map an HTTP status to the fetch error hierarchy."""
    sc = resp.status_code
    url = str(resp.request.url) if resp.request is not None else ""
    if 200 <= sc < 300:
        return
    if sc == 404:
        raise PermanentURLError(f"{name}: 404 for {url}")
    if sc in (401, 403):
        raise BlockedError(f"{name}: {sc} for {url}")
    if sc == 429:
        raise RateLimitedError(url, resp.headers.get("Retry-After"))
    raise TransientFetchError(f"{name}: status {sc} for {url}")


class AdapterHttpClient:
    """
    One httpx session per adapter run.

    Cookies persist across requests so storefronts that hand out a session on
    login keep recognising the client.
    """

    def __init__(
        self,
        name: str,
        delay_seconds: float = 0.0,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.name = name
        self.delay_seconds = max(0.0, delay_seconds)
        hdrs = default_headers()
        if headers:
            hdrs.update(headers)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers=hdrs,
            timeout=default_timeout(),
            follow_redirects=True,
        )
        if not self._owns_client:
            self._client.headers.update(hdrs)

    async def __aenter__(self) -> "AdapterHttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def reset_session(self) -> None:
        """Drop cookies so the next login starts a fresh session."""
        self._client.cookies.clear()

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        content: Optional[str] = None,
    ) -> httpx.Response:
        """
        Send one request after the pacing delay.

        Raises:
            BlockedError: 401/403
            PermanentURLError: 404
            RateLimitedError: 429
            TransientFetchError: 5xx, other statuses, timeouts, transport errors
        """
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        try:
            resp = await self._client.request(method, url, headers=headers, content=content)
        except TRANSIENT_EXC as e:
            raise TransientFetchError(f"{self.name}: {type(e).__name__} for {url}") from e
        except httpx.HTTPError as e:
            raise TransientFetchError(f"{self.name}: {e} for {url}") from e

        raise_for_status(resp, self.name)
        return resp

    async def get_text(self, url: str, headers: Optional[dict[str, str]] = None) -> str:
        resp = await self.request("GET", url, headers=headers)
        return resp.text

    async def get_json(self, url: str, headers: Optional[dict[str, str]] = None) -> Any:
        resp = await self.request("GET", url, headers=headers)
        try:
            return resp.json()
        except ValueError as e:
            raise TransientFetchError(f"{self.name}: invalid JSON from {url}") from e

    async def post(
        self,
        url: str,
        content: str = "{}",
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        hdrs = {"Content-Type": "application/json"}
        if headers:
            hdrs.update(headers)
        return await self.request("POST", url, headers=hdrs, content=content)
