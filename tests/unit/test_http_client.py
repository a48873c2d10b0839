"""
Unit tests for the rate-limited fetcher
"""

import httpx
import pytest
from core.exceptions import (
    ProviderError,
    UnauthorizedError,
    NotFoundError,
    RateLimitedError,
    TransientNetworkError,
    FetchTimeoutError,
    RetryableError,
    NonRetryableError,
)
from ingestion.http_client import RateLimitedFetcher
from ingestion.rate_limiter import TokenBucket
from conftest import FakeClock


def make_fetcher(handler, clock=None):
    return RateLimitedFetcher(
        provider="gitlab",
        base_url="https://gitlab.example.com/api/v4",
        headers={"Authorization": "Bearer glpat-test-token"},
        rate_limiter=TokenBucket.from_interval(100, clock=clock or FakeClock()),
        transport=httpx.MockTransport(handler),
    )


class TestRateLimitedFetcher:
    """Test request handling and error mapping"""

    @pytest.mark.asyncio
    async def test_successful_get(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"id": 1}])

        clock = FakeClock()
        async with make_fetcher(handler, clock) as fetcher:
            first = await fetcher.get("/projects", params={"page": 1})
            await fetcher.get("/projects", params={"page": 2})

        assert first == [{"id": 1}]
        assert fetcher.request_count == 2
        assert seen[0].url.path == "/api/v4/projects"
        assert seen[0].url.params["page"] == "1"
        assert seen[0].headers["Authorization"] == "Bearer glpat-test-token"
        # second request waited for the 100ms interval
        assert clock.now == pytest.approx(0.1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, error_type", [
        (401, UnauthorizedError),
        (403, UnauthorizedError),
        (404, NotFoundError),
        (500, ProviderError),
        (502, ProviderError),
    ])
    async def test_http_errors(self, status_code, error_type):
        async with make_fetcher(lambda request: httpx.Response(status_code, json={})) as fetcher:
            with pytest.raises(error_type) as exc_info:
                await fetcher.get("/projects/1")

        assert exc_info.value.status_code == status_code
        assert exc_info.value.context["provider"] == "gitlab"

    @pytest.mark.asyncio
    async def test_rate_limited_carries_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "7"}, json={})

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(RateLimitedError) as exc_info:
                await fetcher.get("/projects")

        assert exc_info.value.retry_after == 7
        assert isinstance(exc_info.value, RetryableError)

    @pytest.mark.asyncio
    async def test_unauthorized_is_not_retryable(self):
        async with make_fetcher(lambda request: httpx.Response(401)) as fetcher:
            with pytest.raises(NonRetryableError):
                await fetcher.get("/user")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(FetchTimeoutError) as exc_info:
                await fetcher.get("/projects")

        assert isinstance(exc_info.value.original_exception, httpx.ReadTimeout)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(TransientNetworkError) as exc_info:
                await fetcher.get("/projects")

        assert not isinstance(exc_info.value, FetchTimeoutError)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        async with make_fetcher(handler) as fetcher:
            with pytest.raises(ProviderError) as exc_info:
                await fetcher.get("/projects")

        assert "maintenance" in exc_info.value.context["response_body"]
