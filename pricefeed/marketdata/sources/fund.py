"""Japanese mutual-fund NAV from the Morningstar Japan CSV download."""

from __future__ import annotations

import csv
import logging
from datetime import datetime, timedelta, timezone
from io import StringIO

from pricefeed.marketdata.errors import ParseError, SymbolNotFoundError
from pricefeed.marketdata.models import MarketDataRecord
from pricefeed.marketdata.sources.base import HttpSource, browser_headers
from pricefeed.utils import safe_float, utc_now_iso

logger = logging.getLogger(__name__)

_CSV_URL = "https://www.morningstar.co.jp/FundData/DownloadStandardPriceData.do"
_JST = timezone(timedelta(hours=9))
_PRICE_COLUMNS = ("基準価額", "NAV")
_DATE_COLUMNS = ("日付", "Date")


def _nav(row: dict[str, str]) -> float | None:
    for col in _PRICE_COLUMNS:
        value = safe_float(row.get(col))
        if value is not None:
            return value
    return None


def _as_of(row: dict[str, str]) -> str:
    """``YYYY/MM/DD`` → noon JST, ISO-8601."""
    raw = next((row[c] for c in _DATE_COLUMNS if row.get(c)), "")
    try:
        day = datetime.strptime(raw.strip(), "%Y/%m/%d")
    except ValueError:
        return utc_now_iso()
    return day.replace(hour=12, tzinfo=_JST).isoformat()


class MorningstarCsvSource(HttpSource):
    provider_name = "morningstar-csv"

    async def fetch(self, symbol: str) -> MarketDataRecord | None:
        resp = await self._get(
            _CSV_URL,
            params={"fnc": symbol},
            headers=browser_headers(accept="text/csv,application/csv", accept_language="ja,en;q=0.5"),
        )
        return self.parse(symbol, resp.content.decode("shift_jis", errors="replace"))

    def parse(self, symbol: str, text: str) -> MarketDataRecord:
        rows = [row for row in csv.DictReader(StringIO(text.strip())) if any((v or "").strip() for v in row.values())]
        if not rows:
            raise SymbolNotFoundError(self.name, f"empty CSV for {symbol}")

        latest = rows[-1]
        price = _nav(latest)
        if price is None or price <= 0:
            raise ParseError(self.name, f"invalid NAV in CSV for {symbol}")

        change = change_percent = 0.0
        if len(rows) > 1:
            previous = _nav(rows[-2])
            if previous and previous > 0:
                change = price - previous
                change_percent = change / previous * 100.0

        return MarketDataRecord(
            symbol=symbol,
            price=price,
            change=round(change, 4),
            change_percent=round(change_percent, 4),
            currency="JPY",
            name=symbol,
            last_updated=_as_of(latest),
            source=self.name,
            is_stock=False,
            is_mutual_fund=True,
            price_label="NAV",
            extra={"csv_records": len(rows)},
        )
