"""BeautifulSoup quote scrapers configured by CSS selectors.

Selectors track third-party markup and break without notice; a page that
loads but no longer matches raises ``ParseError`` so the chain moves on.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Sequence

import httpx
from bs4 import BeautifulSoup

from pricefeed.marketdata.errors import ParseError
from pricefeed.marketdata.models import MarketDataRecord
from pricefeed.marketdata.sources.base import HttpSource, browser_headers
from pricefeed.utils import utc_now_iso

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"[^0-9.\-]")


def _number(text: str) -> float | None:
    cleaned = _NUMBER_RE.sub("", text)
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def _first_text(soup: BeautifulSoup, selectors: Sequence[str]) -> str:
    for selector in selectors:
        node = soup.select_one(selector)
        if node is not None:
            text = node.get_text(strip=True)
            if text:
                return text
    return ""


class HtmlQuoteSource(HttpSource):
    """Scrape one quote page into a ``MarketDataRecord``."""

    def __init__(
        self,
        name: str,
        url_for: Callable[[str], str],
        *,
        price_selectors: Sequence[str],
        name_selectors: Sequence[str] = (),
        change_selectors: Sequence[str] = (),
        change_percent_selectors: Sequence[str] = (),
        currency: str = "USD",
        accept_language: str = "en-US,en;q=0.9",
        referer: str | None = None,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.provider_name = name
        self._url_for = url_for
        self._price_selectors = tuple(price_selectors)
        self._name_selectors = tuple(name_selectors)
        self._change_selectors = tuple(change_selectors)
        self._change_percent_selectors = tuple(change_percent_selectors)
        self._currency = currency
        self._accept_language = accept_language
        self._referer = referer

    async def fetch(self, symbol: str) -> MarketDataRecord | None:
        resp = await self._get(
            self._url_for(symbol),
            headers=browser_headers(accept_language=self._accept_language, referer=self._referer),
        )
        return self.parse(symbol, resp.text)

    def parse(self, symbol: str, html: str) -> MarketDataRecord:
        soup = BeautifulSoup(html, "html.parser")

        price_text = _first_text(soup, self._price_selectors)
        price = _number(price_text)
        if price is None or price <= 0:
            raise ParseError(self.name, f"price not found for {symbol}")

        change = _number(_first_text(soup, self._change_selectors))
        change_percent = _number(_first_text(soup, self._change_percent_selectors))
        return MarketDataRecord(
            symbol=symbol,
            price=price,
            change=change if change is not None else 0.0,
            change_percent=change_percent if change_percent is not None else 0.0,
            currency=self._currency,
            name=_first_text(soup, self._name_selectors) or symbol,
            last_updated=utc_now_iso(),
            source=self.name,
            is_stock=True,
            is_mutual_fund=False,
        )


# ── concrete scrapers ─────────────────────────────────────────────────

_JA = "ja,en-US;q=0.7,en;q=0.3"


def yahoo_finance_web(*, timeout: float = 20.0, transport: httpx.AsyncBaseTransport | None = None) -> HtmlQuoteSource:
    return HtmlQuoteSource(
        "yahoo-web",
        lambda s: f"https://finance.yahoo.com/quote/{s}",
        price_selectors=['[data-testid="qsp-price"]', '[data-test="qsp-price"]',
                         'fin-streamer[data-field="regularMarketPrice"]'],
        change_selectors=['[data-testid="qsp-price-change"]', 'fin-streamer[data-field="regularMarketChange"]'],
        change_percent_selectors=['[data-testid="qsp-price-change-percent"]',
                                  'fin-streamer[data-field="regularMarketChangePercent"]'],
        name_selectors=["h1"],
        referer="https://finance.yahoo.com/",
        timeout=timeout,
        transport=transport,
    )


def marketwatch(*, timeout: float = 20.0, transport: httpx.AsyncBaseTransport | None = None) -> HtmlQuoteSource:
    return HtmlQuoteSource(
        "marketwatch",
        lambda s: f"https://www.marketwatch.com/investing/stock/{s.lower()}",
        price_selectors=[".intraday__price .value", "bg-quote.value"],
        change_selectors=[".intraday__change .change--point--q"],
        change_percent_selectors=[".intraday__change .change--percent--q"],
        name_selectors=["h1.company__name"],
        timeout=timeout,
        transport=transport,
    )


def yahoo_finance_japan(*, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> HtmlQuoteSource:
    return HtmlQuoteSource(
        "yahoo-japan",
        lambda code: f"https://finance.yahoo.co.jp/quote/{code}.T",
        price_selectors=["._3rXWJKZF", "._3s5O5DJ7"],
        name_selectors=["._3s5O0sub", "h1"],
        currency="JPY",
        accept_language=_JA,
        referer="https://finance.yahoo.co.jp/",
        timeout=timeout,
        transport=transport,
    )


def minkabu(*, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> HtmlQuoteSource:
    return HtmlQuoteSource(
        "minkabu",
        lambda code: f"https://minkabu.jp/stock/{code}",
        price_selectors=[".stock_price"],
        name_selectors=[".md_card_title"],
        currency="JPY",
        accept_language=_JA,
        timeout=timeout,
        transport=transport,
    )


def kabutan(*, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> HtmlQuoteSource:
    return HtmlQuoteSource(
        "kabutan",
        lambda code: f"https://kabutan.jp/stock/?code={code}",
        price_selectors=[".kabuka"],
        name_selectors=[".company_block h3"],
        currency="JPY",
        accept_language=_JA,
        timeout=timeout,
        transport=transport,
    )
