"""Yahoo Finance JSON quote API (single and bulk)."""

from __future__ import annotations

import logging
import re
from typing import Any

from pricefeed.marketdata.errors import ParseError, SymbolNotFoundError
from pricefeed.marketdata.models import MarketDataRecord
from pricefeed.marketdata.sources.base import HttpSource, browser_headers, is_jp_code
from pricefeed.utils import safe_float, utc_now_iso

logger = logging.getLogger(__name__)

_QUOTE_URL = "https://query1.finance.yahoo.com/v7/finance/quote"
_FUND_CODE_RE = re.compile(r"^\d{7,8}C(\.T)?$", re.IGNORECASE)


def yahoo_symbol(symbol: str) -> str:
    """Tokyo listings are quoted as ``<code>.T``."""
    return f"{symbol}.T" if is_jp_code(symbol) else symbol


class YahooQuoteSource(HttpSource):
    provider_name = "yahoo-api"

    async def fetch(self, symbol: str) -> MarketDataRecord | None:
        record = (await self.fetch_many([symbol])).get(symbol)
        if record is None:
            raise SymbolNotFoundError(self.name, f"no quote for {symbol}")
        return record

    async def fetch_many(self, symbols: list[str]) -> dict[str, MarketDataRecord]:
        """One request for all ``symbols``; symbols without a usable quote are omitted."""
        if not symbols:
            return {}
        by_yahoo = {yahoo_symbol(s): s for s in symbols}
        resp = await self._get(
            _QUOTE_URL,
            params={"symbols": ",".join(by_yahoo)},
            headers=browser_headers(accept="application/json", referer="https://finance.yahoo.com/"),
        )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ParseError(self.name, "quote response is not JSON") from exc

        quotes = ((payload or {}).get("quoteResponse") or {}).get("result") or []
        out: dict[str, MarketDataRecord] = {}
        for quote in quotes:
            original = by_yahoo.get(str(quote.get("symbol", "")))
            if original is None:
                continue
            record = self._to_record(original, quote)
            if record is not None:
                out[original] = record
        logger.debug("yahoo quote: %d/%d symbols resolved", len(out), len(symbols))
        return out

    def _to_record(self, symbol: str, quote: dict[str, Any]) -> MarketDataRecord | None:
        price = safe_float(quote.get("regularMarketPrice")) or safe_float(quote.get("ask")) or safe_float(quote.get("bid"))
        if price is None or price <= 0:
            return None
        is_fund = bool(_FUND_CODE_RE.match(symbol))
        return MarketDataRecord(
            symbol=symbol,
            price=price,
            change=safe_float(quote.get("regularMarketChange"), 0.0),
            change_percent=safe_float(quote.get("regularMarketChangePercent"), 0.0),
            currency=quote.get("currency") or ("JPY" if is_jp_code(symbol) else "USD"),
            name=quote.get("shortName") or quote.get("longName") or symbol,
            last_updated=utc_now_iso(),
            source=self.name,
            is_stock=not is_fund,
            is_mutual_fund=is_fund,
            price_label="NAV" if is_fund else None,
        )
