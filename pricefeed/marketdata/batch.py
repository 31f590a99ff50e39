"""Rate-limited batch execution over the fallback orchestrator."""

from __future__ import annotations

import asyncio
import logging

from pricefeed.config import Settings, get_settings
from pricefeed.marketdata.alerts import AlertSink, safe_notify
from pricefeed.marketdata.errors import InvalidRequestError
from pricefeed.marketdata.models import (
    SOURCE_ERROR,
    BatchFetchRequest,
    DataType,
    FetchRequest,
    MarketDataRecord,
)
from pricefeed.marketdata.orchestrator import FallbackOrchestrator
from pricefeed.marketdata.retry import with_retry
from pricefeed.utils import utc_now_iso

logger = logging.getLogger(__name__)


def _dedupe(symbols: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for sym in symbols:
        if sym not in seen:
            seen.add(sym)
            out.append(sym)
    return out


def error_record(symbol: str, exc: BaseException, template: FetchRequest) -> MarketDataRecord:
    """Placeholder for a symbol whose fetch raised; shaped like the template's records."""
    data_type = DataType.coerce(template.data_type)
    is_fund = data_type is DataType.MUTUAL_FUND
    return MarketDataRecord(
        symbol=symbol,
        price=None,
        change=None,
        change_percent=None,
        currency=template.default_values.get("currency", ""),
        name=symbol,
        last_updated=utc_now_iso(),
        source=SOURCE_ERROR,
        is_stock=data_type is not DataType.EXCHANGE_RATE and not is_fund,
        is_mutual_fund=is_fund,
        price_label=template.default_values.get("price_label"),
        error=str(exc) or type(exc).__name__,
    )


class BatchExecutor:
    """Fetch many symbols: bulk endpoint first, then chunked per-symbol fallback."""

    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        *,
        alerts: AlertSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._alerts = alerts
        self._settings = settings or get_settings()

    async def fetch_batch(self, request: BatchFetchRequest) -> dict[str, MarketDataRecord]:
        request.validate()
        symbols = _dedupe(request.symbols)
        results: dict[str, MarketDataRecord] = {}

        residual = symbols
        if request.bulk_source is not None:
            residual = await self._bulk_first(request, symbols, results)

        for start in range(0, len(residual), request.batch_size):
            if start > 0 and request.delay_between_batches > 0:
                await asyncio.sleep(request.delay_between_batches)
            chunk = residual[start:start + request.batch_size]
            records = await asyncio.gather(
                *[self._fetch_one(request, sym, idx) for idx, sym in enumerate(chunk)]
            )
            results.update(zip(chunk, records))

        error_count = sum(1 for r in results.values() if r.source == SOURCE_ERROR)
        if error_count > len(symbols) / 3:
            ratio = error_count / len(symbols)
            logger.warning("High error rate in batch: %d/%d symbols failed", error_count, len(symbols))
            await safe_notify(
                self._alerts,
                "High Error Rate in Data Retrieval",
                f"{error_count} of {len(symbols)} symbols failed ({ratio:.0%})",
                {
                    "data_type": request.template.data_type.value,
                    "error_count": error_count,
                    "total": len(symbols),
                    "error_rate": round(ratio, 4),
                },
            )

        # Requested order.
        return {sym: results[sym] for sym in symbols}

    async def _fetch_one(self, request: BatchFetchRequest, symbol: str, index: int) -> MarketDataRecord:
        if request.stagger and index > 0 and request.rate_limit_delay > 0:
            await asyncio.sleep(index * request.rate_limit_delay)
        try:
            return await self._orchestrator.fetch(request.template.for_symbol(symbol))
        except InvalidRequestError:
            raise
        except Exception as exc:
            logger.error("batch fetch failed for %s: %s", symbol, exc)
            return error_record(symbol, exc, request.template)

    async def _bulk_first(
        self,
        request: BatchFetchRequest,
        symbols: list[str],
        results: dict[str, MarketDataRecord],
    ) -> list[str]:
        """Resolve what the cache and the bulk endpoint can; return the rest."""
        template = request.template
        market = template.data_type.value
        pending: list[str] = []
        blacklisted: list[str] = []
        for sym in symbols:
            if await self._orchestrator.ledger.is_blacklisted(sym, market):
                # Cooling down; the orchestrator serves these from fallback data.
                blacklisted.append(sym)
                continue
            if template.use_cache and not template.refresh:
                cached = await self._orchestrator.read_cached(template.for_symbol(sym).cache_key)
                if cached is not None:
                    results[sym] = cached
                    continue
            pending.append(sym)

        if not pending:
            return blacklisted

        settings = self._settings
        try:
            bulk = await with_retry(
                lambda: request.bulk_source(pending),
                max_retries=settings.retry_max_retries,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            )
        except Exception as exc:
            logger.warning("bulk fetch failed for %d %s symbols: %s", len(pending), market, exc)
            return blacklisted + pending

        ttl = template.cache_ttl or settings.cache_ttl_for(market)
        residual: list[str] = []
        for sym in pending:
            record = (bulk or {}).get(sym)
            if record is None or not record.has_usable_price():
                residual.append(sym)
                continue
            await self._orchestrator.ledger.record_success(sym, market)
            await self._orchestrator.write_cached(template.for_symbol(sym).cache_key, record, ttl)
            results[sym] = record

        logger.info("bulk fetch resolved %d/%d %s symbols", len(pending) - len(residual), len(pending), market)
        return blacklisted + residual
