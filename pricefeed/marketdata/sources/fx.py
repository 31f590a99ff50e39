"""FX rate sources. Symbols are pairs written ``BASE-TARGET`` (``USD-JPY``)."""

from __future__ import annotations

import logging

from pricefeed.marketdata.errors import ParseError, SymbolNotFoundError
from pricefeed.marketdata.models import MarketDataRecord
from pricefeed.marketdata.sources.base import HttpSource, browser_headers
from pricefeed.utils import safe_float, utc_now_iso

logger = logging.getLogger(__name__)

_LATEST_URL = "https://api.exchangerate.host/latest"


def parse_pair(symbol: str) -> tuple[str, str]:
    base, sep, target = symbol.upper().partition("-")
    if not sep or len(base) != 3 or len(target) != 3:
        raise ParseError("fx", f"not a currency pair: {symbol!r}")
    return base, target


def pair_symbol(base: str, target: str) -> str:
    return f"{base.upper()}-{target.upper()}"


def _rate_record(symbol: str, base: str, target: str, rate: float, source: str, last_updated: str) -> MarketDataRecord:
    return MarketDataRecord(
        symbol=symbol,
        price=rate,
        change=0.0,
        change_percent=0.0,
        currency=target,
        name=f"{base}/{target}",
        last_updated=last_updated,
        source=source,
        extra={"pair": symbol, "base": base, "target": target},
    )


class ExchangeRateHostSource(HttpSource):
    provider_name = "exchangerate-host"

    async def fetch(self, symbol: str) -> MarketDataRecord | None:
        base, target = parse_pair(symbol)
        resp = await self._get(
            _LATEST_URL,
            params={"base": base, "symbols": target},
            headers=browser_headers(accept="application/json"),
        )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ParseError(self.name, "response is not JSON") from exc

        rate = safe_float(((data or {}).get("rates") or {}).get(target))
        if rate is None or rate <= 0:
            raise SymbolNotFoundError(self.name, f"no rate for {symbol}")
        as_of = f"{data['date']}T00:00:00+00:00" if data.get("date") else utc_now_iso()
        return _rate_record(symbol, base, target, rate, self.name, as_of)


class StaticRateSource:
    """Hardcoded rates for the common pairs; never fails for a well-formed pair."""

    provider_name = "hardcoded-rates"

    def __init__(self, default_usd_jpy: float = 148.5) -> None:
        self._default_usd_jpy = default_usd_jpy
        self._rates = {
            "USD-JPY": default_usd_jpy,
            "JPY-USD": 1 / default_usd_jpy,
            "EUR-JPY": 160.2,
            "EUR-USD": 1.08,
            "GBP-USD": 1.27,
            "GBP-JPY": 189.8,
        }

    async def __call__(self, symbol: str) -> MarketDataRecord | None:
        base, target = parse_pair(symbol)
        key = pair_symbol(base, target)
        rate = self._rates.get(key)
        if rate is None:
            rate = self._default_usd_jpy if "JPY" in key else 1.0
            logger.info("no hardcoded rate for %s; using %s", key, rate)
        return _rate_record(symbol, base, target, rate, self.provider_name, utc_now_iso())
