"""Shared plumbing for HTTP-backed source adapters."""

from __future__ import annotations

import logging
import random
import re
from typing import Any

import httpx

from pricefeed.marketdata.models import MarketDataRecord

logger = logging.getLogger(__name__)

_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.4 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:123.0) Gecko/20100101 Firefox/123.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
]

_JP_CODE_RE = re.compile(r"^\d{4}$")


def random_user_agent() -> str:
    return random.choice(_USER_AGENTS)


def browser_headers(*, accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    accept_language: str = "en-US,en;q=0.9", referer: str | None = None) -> dict[str, str]:
    headers = {
        "User-Agent": random_user_agent(),
        "Accept": accept,
        "Accept-Language": accept_language,
        "Cache-Control": "no-cache",
    }
    if referer:
        headers["Referer"] = referer
    return headers


def is_jp_code(symbol: str) -> bool:
    return bool(_JP_CODE_RE.match(symbol))


class HttpSource:
    """Base adapter: one ``httpx.AsyncClient`` per call, non-2xx raises.

    Subclasses implement ``fetch(symbol)``. ``transport`` is injectable so
    tests can serve canned responses through ``httpx.MockTransport``.
    """

    provider_name = "http"

    def __init__(self, *, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return self.provider_name

    async def __call__(self, symbol: str) -> MarketDataRecord | None:
        return await self.fetch(symbol)

    async def fetch(self, symbol: str) -> MarketDataRecord | None:
        raise NotImplementedError

    async def _get(self, url: str, *, params: dict[str, Any] | None = None,
                   headers: dict[str, str] | None = None) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            resp = await client.get(url, params=params, headers=headers or browser_headers())
            resp.raise_for_status()
        return resp
