"""
HTTP helper for carrier calls: per-request timeout and bounded retries.

Carrier APIs and tracking pages both go through get_with_retry so every
outbound request has a deadline. Retries cover transient transport errors and
gateway/rate-limit statuses only; any other response is returned as-is for
the adapter to interpret.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_RETRIES = 1
RETRY_BACKOFF_BASE = 0.5  # seconds
MAX_BACKOFF = 5.0
RETRY_STATUSES = (429, 502, 503, 504)
RETRY_EXCEPTIONS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.RemoteProtocolError)


def backoff_delay(attempt: int) -> float:
    """Exponential backoff for the given 1-based retry attempt, capped."""
    if attempt <= 0:
        return 0.0
    return min(RETRY_BACKOFF_BASE * (2 ** (attempt - 1)), MAX_BACKOFF)


async def request_with_retry(
    method: str,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    retry_on: tuple = RETRY_STATUSES,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform one logical request, retrying up to max_retries times.
    The last response is returned even when its status is in retry_on; the
    last transport error is re-raised.
    """
    if max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {max_retries}")
    resp: Optional[httpx.Response] = None
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                resp = await client.request(method, url, **kwargs)
        except RETRY_EXCEPTIONS as e:
            if attempt >= max_retries:
                raise
            logger.warning("HTTP %s %s attempt %s failed: %s", method, url, attempt + 1, e)
            await asyncio.sleep(backoff_delay(attempt + 1))
            continue
        if attempt < max_retries and resp.status_code in retry_on:
            logger.info("HTTP %s %s returned %s, retrying", method, url, resp.status_code)
            await asyncio.sleep(backoff_delay(attempt + 1))
            continue
        return resp
    return resp


async def get_with_retry(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
) -> httpx.Response:
    """GET with retries on gateway errors, 429 and connection errors."""
    return await request_with_retry(
        "GET", url, params=params, headers=headers, timeout=timeout, max_retries=max_retries
    )
