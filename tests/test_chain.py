from __future__ import annotations

import pytest

from conftest import quote
from pricefeed.marketdata.chain import NoUsablePriceError, Source, try_in_order
from pricefeed.marketdata.models import MarketDataRecord


def test_source_name_comes_from_callable() -> None:
    async def apiA(symbol: str) -> MarketDataRecord | None:
        return None

    class Adapter:
        provider_name = "adapter-x"

        async def __call__(self, symbol: str) -> MarketDataRecord | None:
            return None

    assert Source.of(apiA).name == "apiA"
    assert Source.of(Adapter()).name == "adapter-x"
    assert Source.of(apiA, name="custom").name == "custom"
    src = Source.of(apiA)
    assert Source.of(src) is src


@pytest.mark.asyncio
async def test_first_success_wins_and_later_sources_are_not_called() -> None:
    calls: list[str] = []

    async def first(symbol: str) -> MarketDataRecord | None:
        calls.append("first")
        raise RuntimeError("down")

    async def second(symbol: str) -> MarketDataRecord | None:
        calls.append("second")
        return quote(symbol, 10.0)

    async def third(symbol: str) -> MarketDataRecord | None:
        calls.append("third")
        return quote(symbol, 11.0)

    failures: list[tuple[str, BaseException]] = []

    async def on_failure(source: Source, exc: BaseException) -> None:
        failures.append((source.name, exc))

    hit = await try_in_order([Source.of(first), Source.of(second), Source.of(third)], "MSFT",
                             on_failure=on_failure)
    assert hit is not None
    record, source = hit
    assert (record.price, source.name) == (10.0, "second")
    assert calls == ["first", "second"]
    assert [name for name, _ in failures] == ["first"]


@pytest.mark.asyncio
async def test_unusable_records_count_as_failures() -> None:
    async def empty(symbol: str) -> MarketDataRecord | None:
        return None

    async def zero(symbol: str) -> MarketDataRecord | None:
        return quote(symbol, 0.0)

    failures: list[BaseException] = []

    async def on_failure(source: Source, exc: BaseException) -> None:
        failures.append(exc)

    assert await try_in_order([Source.of(empty), Source.of(zero)], "X", on_failure=on_failure) is None
    assert len(failures) == 2
    assert all(isinstance(exc, NoUsablePriceError) for exc in failures)


@pytest.mark.asyncio
async def test_call_wrapper_is_used_for_each_attempt() -> None:
    async def ok(symbol: str) -> MarketDataRecord | None:
        return quote(symbol, 5.0)

    wrapped: list[str] = []

    async def call(source: Source, symbol: str) -> MarketDataRecord | None:
        wrapped.append(source.name)
        return await source(symbol)

    hit = await try_in_order([Source.of(ok)], "Y", call=call)
    assert hit is not None
    assert wrapped == ["ok"]
