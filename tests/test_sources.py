from __future__ import annotations

import httpx
import pytest

from pricefeed.marketdata.errors import ParseError, SymbolNotFoundError
from pricefeed.marketdata.sources import (
    ExchangeRateHostSource,
    MorningstarCsvSource,
    StaticRateSource,
    YahooQuoteSource,
    minkabu,
    yahoo_finance_web,
    yahoo_symbol,
)


def _transport(handler) -> httpx.MockTransport:  # noqa: ANN001
    return httpx.MockTransport(handler)


def test_yahoo_symbol_suffixes_tokyo_codes() -> None:
    assert yahoo_symbol("7203") == "7203.T"
    assert yahoo_symbol("AAPL") == "AAPL"


@pytest.mark.asyncio
async def test_yahoo_bulk_maps_back_to_requested_symbols() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["symbols"])
        return httpx.Response(200, json={"quoteResponse": {"result": [
            {"symbol": "AAPL", "regularMarketPrice": 190.5, "regularMarketChange": 1.2,
             "regularMarketChangePercent": 0.63, "currency": "USD", "shortName": "Apple Inc."},
            {"symbol": "7203.T", "regularMarketPrice": 2750, "shortName": "Toyota"},
            {"symbol": "DEAD", "regularMarketPrice": 0},
        ]}})

    source = YahooQuoteSource(transport=_transport(handler))
    out = await source.fetch_many(["AAPL", "7203", "DEAD"])

    assert seen == ["AAPL,7203.T,DEAD"]
    assert set(out) == {"AAPL", "7203"}
    assert out["AAPL"].price == 190.5
    assert out["AAPL"].name == "Apple Inc."
    assert out["7203"].currency == "JPY"
    assert out["7203"].source == "yahoo-api"


@pytest.mark.asyncio
async def test_yahoo_single_missing_symbol_raises_not_found() -> None:
    source = YahooQuoteSource(transport=_transport(
        lambda request: httpx.Response(200, json={"quoteResponse": {"result": []}})
    ))
    with pytest.raises(SymbolNotFoundError):
        await source.fetch("NOPE")


@pytest.mark.asyncio
async def test_http_errors_surface_as_status_errors() -> None:
    source = YahooQuoteSource(transport=_transport(lambda request: httpx.Response(503)))
    with pytest.raises(httpx.HTTPStatusError):
        await source.fetch("AAPL")


@pytest.mark.asyncio
async def test_html_scraper_reads_configured_selectors() -> None:
    html = """
    <html><body>
      <h1>Apple Inc. (AAPL)</h1>
      <fin-streamer data-field="regularMarketPrice">1,190.50</fin-streamer>
      <fin-streamer data-field="regularMarketChange">+2.25</fin-streamer>
      <fin-streamer data-field="regularMarketChangePercent">(+0.19%)</fin-streamer>
    </body></html>
    """
    source = yahoo_finance_web(transport=_transport(lambda request: httpx.Response(200, text=html)))
    record = await source.fetch("AAPL")
    assert record.price == 1190.5
    assert record.change == 2.25
    assert record.change_percent == 0.19
    assert record.name == "Apple Inc. (AAPL)"
    assert record.source == "yahoo-web"


@pytest.mark.asyncio
async def test_html_scraper_selector_mismatch_is_parse_error() -> None:
    source = minkabu(transport=_transport(lambda request: httpx.Response(200, text="<div>maintenance</div>")))
    with pytest.raises(ParseError):
        await source.fetch("7203")


@pytest.mark.asyncio
async def test_minkabu_parses_yen_price() -> None:
    html = '<div class="md_card_title">トヨタ自動車</div><div class="stock_price">2,750.5円</div>'
    source = minkabu(transport=_transport(lambda request: httpx.Response(200, text=html)))
    record = await source.fetch("7203")
    assert record.price == 2750.5
    assert record.currency == "JPY"
    assert record.name == "トヨタ自動車"


@pytest.mark.asyncio
async def test_morningstar_csv_uses_last_two_rows() -> None:
    body = "日付,基準価額,純資産総額\n2026/10/16,20000,100\n2026/10/17,20100,101\n".encode("shift_jis")

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["fnc"] == "2931113C"
        return httpx.Response(200, content=body)

    record = await MorningstarCsvSource(transport=_transport(handler)).fetch("2931113C")
    assert record.price == 20100.0
    assert record.change == 100.0
    assert record.change_percent == 0.5
    assert record.is_mutual_fund is True and record.is_stock is False
    assert record.price_label == "NAV"
    assert record.last_updated.startswith("2026-10-17T12:00:00")


@pytest.mark.asyncio
async def test_morningstar_empty_csv_is_not_found() -> None:
    source = MorningstarCsvSource(transport=_transport(lambda request: httpx.Response(200, content=b"")))
    with pytest.raises(SymbolNotFoundError):
        await source.fetch("0000000C")


@pytest.mark.asyncio
async def test_exchangerate_host_reads_target_rate() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["base"] == "USD"
        assert request.url.params["symbols"] == "JPY"
        return httpx.Response(200, json={"date": "2026-10-17", "rates": {"JPY": 149.8}})

    record = await ExchangeRateHostSource(transport=_transport(handler)).fetch("USD-JPY")
    assert record.price == 149.8
    assert record.currency == "JPY"
    assert record.extra == {"pair": "USD-JPY", "base": "USD", "target": "JPY"}
    assert record.last_updated.startswith("2026-10-17")


@pytest.mark.asyncio
async def test_exchangerate_host_without_rate_raises() -> None:
    source = ExchangeRateHostSource(transport=_transport(lambda request: httpx.Response(200, json={"rates": {}})))
    with pytest.raises(SymbolNotFoundError):
        await source.fetch("USD-XYZ")


@pytest.mark.asyncio
async def test_static_rates() -> None:
    source = StaticRateSource(150.0)
    assert (await source("USD-JPY")).price == 150.0
    assert (await source("EUR-USD")).price == 1.08
    assert (await source("AUD-JPY")).price == 150.0
    assert (await source("AUD-CAD")).price == 1.0
    with pytest.raises(ParseError):
        await source("USDJPY")
