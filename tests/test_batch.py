from __future__ import annotations

import asyncio

import pytest

from conftest import MemoryCache, RecordingAlerts, quote
from pricefeed.config import Settings
from pricefeed.marketdata.alerts import never_sample
from pricefeed.marketdata.batch import BatchExecutor
from pricefeed.marketdata.blacklist import BlacklistLedger
from pricefeed.marketdata.errors import InvalidRequestError
from pricefeed.marketdata.models import BatchFetchRequest, DataType, FetchRequest, MarketDataRecord
from pricefeed.marketdata.orchestrator import FallbackOrchestrator


class StubOrchestrator(FallbackOrchestrator):
    """Real cache/ledger plumbing; ``fetch`` raises for the symbols in ``broken``."""

    def __init__(self, cache: MemoryCache, ledger: BlacklistLedger, settings: Settings,
                 broken: set[str] | None = None) -> None:
        super().__init__(cache, ledger, None, sampler=never_sample, settings=settings)
        self.broken = broken or set()
        self.fetched: list[str] = []

    async def fetch(self, request: FetchRequest) -> MarketDataRecord:
        self.fetched.append(request.symbol)
        if request.symbol in self.broken:
            raise RuntimeError(f"unexpected failure for {request.symbol}")
        return quote(request.symbol, 10.0, source="stub")


def _template() -> FetchRequest:
    async def unused(symbol: str) -> MarketDataRecord | None:
        return None

    return FetchRequest(symbol="", data_type=DataType.US_STOCK, sources=[unused],
                        default_values={"price": 100.0, "currency": "USD"})


def _batch(symbols: list[str], **kw) -> BatchFetchRequest:  # noqa: ANN003
    kw.setdefault("delay_between_batches", 0.0)
    kw.setdefault("rate_limit_delay", 0.0)
    return BatchFetchRequest(symbols=symbols, template=_template(), **kw)


@pytest.mark.asyncio
async def test_every_symbol_appears_once(cache: MemoryCache, ledger: BlacklistLedger, settings: Settings) -> None:
    orch = StubOrchestrator(cache, ledger, settings, broken={"B"})
    executor = BatchExecutor(orch, settings=settings)
    result = await executor.fetch_batch(_batch(["A", "B", "C", "A", "D"], batch_size=2))

    assert list(result) == ["A", "B", "C", "D"]
    assert result["B"].source == "error"
    assert result["B"].price is None
    assert "unexpected failure" in (result["B"].error or "")
    assert result["B"].is_stock is True and result["B"].is_mutual_fund is False
    assert (result["B"].currency, result["B"].name) == ("USD", "B")
    assert sorted(orch.fetched) == ["A", "B", "C", "D"]


@pytest.mark.asyncio
async def test_high_error_rate_alerts_exactly_once(cache: MemoryCache, ledger: BlacklistLedger,
                                                   settings: Settings, alerts: RecordingAlerts) -> None:
    symbols = [f"S{i}" for i in range(9)]
    orch = StubOrchestrator(cache, ledger, settings, broken=set(symbols[:4]))
    executor = BatchExecutor(orch, alerts=alerts, settings=settings)
    await executor.fetch_batch(_batch(symbols, batch_size=3))

    assert alerts.titles() == ["High Error Rate in Data Retrieval"]
    assert alerts.sent[0][2]["error_count"] == 4


@pytest.mark.asyncio
async def test_error_rate_at_one_third_does_not_alert(cache: MemoryCache, ledger: BlacklistLedger,
                                                      settings: Settings, alerts: RecordingAlerts) -> None:
    symbols = [f"S{i}" for i in range(9)]
    orch = StubOrchestrator(cache, ledger, settings, broken=set(symbols[:3]))
    executor = BatchExecutor(orch, alerts=alerts, settings=settings)
    await executor.fetch_batch(_batch(symbols, batch_size=3))
    assert alerts.sent == []


@pytest.mark.asyncio
async def test_bulk_source_first_then_residual(cache: MemoryCache, ledger: BlacklistLedger,
                                               settings: Settings) -> None:
    await cache.set("us-stock:CACHED", quote("CACHED", 42.0, source="yahoo-api").to_dict(), 60)
    bulk_calls: list[list[str]] = []

    async def bulk(symbols: list[str]) -> dict[str, MarketDataRecord]:
        bulk_calls.append(list(symbols))
        return {"AAPL": quote("AAPL", 190.0, source="yahoo-api"), "ZERO": quote("ZERO", 0.0)}

    orch = StubOrchestrator(cache, ledger, settings)
    executor = BatchExecutor(orch, settings=settings)
    result = await executor.fetch_batch(_batch(["CACHED", "AAPL", "ZERO", "MISS"], bulk_source=bulk))

    assert bulk_calls == [["AAPL", "ZERO", "MISS"]]
    assert result["CACHED"].from_cache is True
    assert result["AAPL"].source == "yahoo-api"
    assert cache.ttls["us-stock:AAPL"] == settings.cache_ttl_us_stock
    assert sorted(orch.fetched) == ["MISS", "ZERO"]


@pytest.mark.asyncio
async def test_bulk_failure_sends_everything_through_chain(cache: MemoryCache, ledger: BlacklistLedger,
                                                           settings: Settings) -> None:
    async def bulk(symbols: list[str]) -> dict[str, MarketDataRecord]:
        raise RuntimeError("bulk endpoint down")

    orch = StubOrchestrator(cache, ledger, settings)
    result = await BatchExecutor(orch, settings=settings).fetch_batch(_batch(["A", "B"], bulk_source=bulk))
    assert sorted(orch.fetched) == ["A", "B"]
    assert all(r.source == "stub" for r in result.values())


@pytest.mark.asyncio
async def test_stagger_and_chunk_delays(cache: MemoryCache, ledger: BlacklistLedger, settings: Settings,
                                        monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    orch = StubOrchestrator(cache, ledger, settings)
    request = _batch(["A", "B", "C", "D", "E"], batch_size=3, stagger=True,
                     rate_limit_delay=0.5, delay_between_batches=1.0)
    await BatchExecutor(orch, settings=settings).fetch_batch(request)
    assert sorted(sleeps) == [0.5, 0.5, 1.0, 1.0]


@pytest.mark.asyncio
async def test_empty_batch_is_rejected(cache: MemoryCache, ledger: BlacklistLedger, settings: Settings) -> None:
    executor = BatchExecutor(StubOrchestrator(cache, ledger, settings), settings=settings)
    with pytest.raises(InvalidRequestError):
        await executor.fetch_batch(_batch([]))


@pytest.mark.asyncio
async def test_malformed_batches_raise_before_any_fetch(cache: MemoryCache, ledger: BlacklistLedger,
                                                        settings: Settings, alerts: RecordingAlerts) -> None:
    orch = StubOrchestrator(cache, ledger, settings)
    executor = BatchExecutor(orch, alerts=alerts, settings=settings)

    no_sources = _batch(["A", "B"])
    no_sources.template.sources = []
    with pytest.raises(InvalidRequestError):
        await executor.fetch_batch(no_sources)
    with pytest.raises(InvalidRequestError):
        await executor.fetch_batch(_batch(["A", "", "B"]))

    assert orch.fetched == []
    assert alerts.sent == []


@pytest.mark.asyncio
async def test_invalid_request_from_orchestrator_propagates(cache: MemoryCache, ledger: BlacklistLedger,
                                                            settings: Settings, alerts: RecordingAlerts) -> None:
    class Rejecting(StubOrchestrator):
        async def fetch(self, request: FetchRequest) -> MarketDataRecord:
            raise InvalidRequestError(f"bad request for {request.symbol}")

    executor = BatchExecutor(Rejecting(cache, ledger, settings), alerts=alerts, settings=settings)
    with pytest.raises(InvalidRequestError):
        await executor.fetch_batch(_batch(["A", "B"]))
    assert alerts.sent == []


@pytest.mark.asyncio
async def test_bulk_call_skips_blacklisted_symbols(cache: MemoryCache, ledger: BlacklistLedger,
                                                   settings: Settings) -> None:
    for _ in range(3):
        await ledger.record_failure("BADCO", "us-stock", "boom")
    bulk_calls: list[list[str]] = []

    async def bulk(symbols: list[str]) -> dict[str, MarketDataRecord]:
        bulk_calls.append(list(symbols))
        return {sym: quote(sym, 50.0, source="yahoo-api") for sym in symbols}

    orch = StubOrchestrator(cache, ledger, settings)
    result = await BatchExecutor(orch, settings=settings).fetch_batch(_batch(["AAPL", "BADCO"], bulk_source=bulk))

    assert bulk_calls == [["AAPL"]]
    assert orch.fetched == ["BADCO"]
    assert list(result) == ["AAPL", "BADCO"]
