"""
Rate-limited HTTP fetcher used by both connectors.

This module provides:
- Bearer/token authentication headers per provider
- A token-bucket wait before every request
- A fixed request timeout
- Mapping of HTTP and transport failures onto the engine's exception types

Retries are deliberately absent here: the caller owns the retry policy.
"""

import httpx
from typing import Any, Dict, Optional
from core.exceptions import (
    ProviderError,
    UnauthorizedError,
    NotFoundError,
    RateLimitedError,
    TransientNetworkError,
    FetchTimeoutError,
)
from ingestion.rate_limiter import TokenBucket
import logging

logger = logging.getLogger(__name__)


class RateLimitedFetcher:
    """
    Thin async HTTP client wrapper for one provider.

    Usage:
        async with RateLimitedFetcher("gitlab", base_url, headers, limiter) as fetcher:
            data = await fetcher.get("/projects/1")
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        headers: Dict[str, str],
        rate_limiter: TokenBucket,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json", **headers}
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.request_count = 0

    async def __aenter__(self) -> "RateLimitedFetcher":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _context(self, path: str, **extra: Any) -> Dict[str, Any]:
        return {"provider": self.provider, "url": f"{self.base_url}{path}", **extra}

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET ``path`` and return the decoded JSON body.

        Raises:
            UnauthorizedError: 401 / 403
            NotFoundError: 404
            RateLimitedError: 429
            ProviderError: any other 4xx/5xx or an undecodable body
            FetchTimeoutError: request exceeded the timeout
            TransientNetworkError: connection-level failures
        """
        if self._client is None:
            await self.open()

        await self.rate_limiter.acquire()
        self.request_count += 1

        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(
                f"{self.provider} request timed out",
                context=self._context(path, timeout=self.timeout),
                original_exception=e
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"{self.provider} network error",
                context=self._context(path),
                original_exception=e
            )

        status_code = response.status_code

        if status_code in (401, 403):
            raise UnauthorizedError(
                f"Authentication failed for {self.provider}",
                context=self._context(path),
                status_code=status_code
            )

        if status_code == 404:
            raise NotFoundError(
                f"Resource not found: {path}",
                context=self._context(path),
                status_code=404
            )

        if status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitedError(
                f"Rate limit exceeded for {self.provider}",
                context=self._context(path),
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if status_code >= 400:
            raise ProviderError(
                f"{self.provider} returned HTTP {status_code}",
                context=self._context(path, response_body=response.text[:500]),
                status_code=status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                "Failed to parse JSON response",
                context=self._context(path, response_body=response.text[:500]),
                original_exception=e,
                status_code=status_code
            )
