"""Bounded retry with exponential backoff for a single source call."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from pricefeed.marketdata.errors import SourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = 429


def is_retryable_error(exc: BaseException) -> bool:
    """Transient conditions (timeouts, 5xx, 429, resets) are retryable; 4xx and parse errors are not."""
    if isinstance(exc, SourceError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == _RETRYABLE_STATUS
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt + 1``; non-decreasing in ``attempt``."""
    return min(max_delay, base_delay * (2 ** attempt))


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 10.0,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Callable[[BaseException, int, float], Any] | None = None,
) -> T:
    """Await ``fn()``; retry up to ``max_retries`` times while ``should_retry`` allows.

    Re-raises the last error once retries are exhausted or the error is
    classified as permanent.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries or not should_retry(exc):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug(
                "retry attempt %d/%d after %.2fs: %s", attempt + 1, max_retries, delay, exc
            )
            if on_retry is not None:
                result = on_retry(exc, attempt, delay)
                if asyncio.iscoroutine(result):
                    await result
            await asyncio.sleep(delay)
            attempt += 1
