"""
HTTP helper retry behaviour
"""
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.services.http_client import backoff_delay, get_with_retry


def _resp(status_code):
    return httpx.Response(status_code, text="", request=httpx.Request("GET", "https://carrier.example.com"))


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("app.services.http_client.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestGetWithRetry:
    async def test_retries_gateway_error_then_succeeds(self):
        request = AsyncMock(side_effect=[_resp(503), _resp(200)])
        with patch.object(httpx.AsyncClient, "request", new=request):
            resp = await get_with_retry("https://carrier.example.com", max_retries=1)
        assert resp.status_code == 200
        assert request.await_count == 2

    async def test_returns_last_response_when_retries_exhausted(self):
        request = AsyncMock(side_effect=[_resp(502), _resp(502)])
        with patch.object(httpx.AsyncClient, "request", new=request):
            resp = await get_with_retry("https://carrier.example.com", max_retries=1)
        assert resp.status_code == 502

    async def test_client_errors_are_not_retried(self):
        request = AsyncMock(return_value=_resp(404))
        with patch.object(httpx.AsyncClient, "request", new=request):
            resp = await get_with_retry("https://carrier.example.com", max_retries=3)
        assert resp.status_code == 404
        assert request.await_count == 1

    async def test_transport_error_reraised_after_retries(self):
        request = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch.object(httpx.AsyncClient, "request", new=request):
            with pytest.raises(httpx.ConnectError):
                await get_with_retry("https://carrier.example.com", max_retries=2)
        assert request.await_count == 3

    def test_backoff_is_capped(self):
        assert backoff_delay(0) == 0.0
        assert backoff_delay(1) == 0.5
        assert backoff_delay(20) == 5.0
