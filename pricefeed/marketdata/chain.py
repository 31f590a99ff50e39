"""Source chain: named fetch functions tried strictly in priority order."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from pricefeed.marketdata.models import MarketDataRecord

logger = logging.getLogger(__name__)

SourceFn = Callable[[str], Awaitable["MarketDataRecord | None"]]


@dataclass(frozen=True)
class Source:
    """A named adapter ``symbol -> MarketDataRecord``.

    The fetch function raises (or returns ``None`` / an unusable record) on
    failure; the name is what ends up in ``record.source`` and failure reasons.
    """

    name: str
    fetch: SourceFn

    async def __call__(self, symbol: str) -> MarketDataRecord | None:
        return await self.fetch(symbol)

    @classmethod
    def of(cls, fn: Source | SourceFn, name: str | None = None) -> Source:
        if isinstance(fn, Source):
            return fn
        label = name or getattr(fn, "provider_name", None) or getattr(fn, "__name__", None) or repr(fn)
        return cls(name=str(label), fetch=fn)


class NoUsablePriceError(Exception):
    """The source answered but the record carries no usable price."""


async def try_in_order(
    sources: Sequence[Source],
    symbol: str,
    *,
    call: Callable[[Source, str], Awaitable[MarketDataRecord | None]] | None = None,
    on_failure: Callable[[Source, BaseException], Awaitable[Any]] | None = None,
    delay: float = 0.0,
) -> tuple[MarketDataRecord, Source] | None:
    """Return the first ``(record, source)`` with a usable price, else ``None``.

    Later sources are never invoked once one succeeds. ``call`` wraps each
    attempt (the orchestrator passes its retry wrapper); ``on_failure`` sees
    every exception or unusable result; ``delay`` separates attempts.
    """
    for index, source in enumerate(sources):
        if index > 0 and delay > 0:
            await asyncio.sleep(delay)
        try:
            if call is not None:
                record = await call(source, symbol)
            else:
                record = await source(symbol)
            if record is None or not record.has_usable_price():
                price = None if record is None else record.price
                raise NoUsablePriceError(f"no usable price (price={price})")
        except Exception as exc:
            logger.warning("Source %s failed for %s: %s", source.name, symbol, exc)
            if on_failure is not None:
                await on_failure(source, exc)
            continue
        return record, source
    return None
