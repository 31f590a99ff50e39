"""MarketDataService: the facade callers use.

Wires the per-type source chains and defaults onto the orchestrator and
the batch executor, and exposes the blacklist admin and cache pre-warm
operations.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

import httpx
import redis.asyncio as aioredis

from pricefeed.config import Settings, get_settings
from pricefeed.marketdata.alerts import (
    AlertSink,
    LoggingAlertSink,
    Sampler,
    ThrottledAlertSink,
    WebhookAlertSink,
    random_sampler,
)
from pricefeed.marketdata.batch import BatchExecutor
from pricefeed.marketdata.blacklist import BlacklistLedger, RedisBlacklistStore
from pricefeed.marketdata.cache import CacheStore, RedisCache
from pricefeed.marketdata.chain import Source
from pricefeed.marketdata.models import (
    SOURCE_DEFAULT,
    SOURCE_ERROR,
    SOURCE_SNAPSHOT,
    BatchFetchRequest,
    BlacklistEntry,
    DataType,
    FetchRequest,
    MarketDataRecord,
)
from pricefeed.marketdata.orchestrator import FallbackOrchestrator
from pricefeed.marketdata.snapshot import SnapshotFallbackStore, SnapshotStore
from pricefeed.marketdata.sources import (
    ExchangeRateHostSource,
    MorningstarCsvSource,
    StaticRateSource,
    YahooQuoteSource,
    kabutan,
    marketwatch,
    minkabu,
    pair_symbol,
    yahoo_finance_japan,
    yahoo_finance_web,
)

logger = logging.getLogger(__name__)

PREWARM_SYMBOLS: dict[DataType, list[str]] = {
    DataType.US_STOCK: ["AAPL", "MSFT", "GOOGL", "AMZN", "META", "TSLA", "NVDA", "BRK-B", "V", "JPM"],
    DataType.JP_STOCK: ["7203", "9984", "6758", "6861", "6501", "7974", "4502", "8306", "9432", "6702"],
    DataType.MUTUAL_FUND: ["2931113C", "0131103C", "03311171C", "0231266C", "2931112C", "0131310C"],
    DataType.EXCHANGE_RATE: ["USD-JPY"],
}

_FALLBACK_SOURCES = {SOURCE_SNAPSHOT, SOURCE_DEFAULT, SOURCE_ERROR}


def default_values_for(data_type: DataType, settings: Settings) -> dict[str, Any]:
    if data_type is DataType.US_STOCK:
        return {"price": settings.default_us_stock_price, "currency": "USD"}
    if data_type is DataType.JP_STOCK:
        return {"price": settings.default_jp_stock_price, "currency": "JPY"}
    if data_type is DataType.MUTUAL_FUND:
        return {"price": settings.default_mutual_fund_price, "currency": "JPY", "price_label": "NAV"}
    return {"price": 1.0, "prices": {"USD-JPY": settings.default_exchange_rate}}


def build_source_chains(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[dict[DataType, list[Source]], YahooQuoteSource]:
    """Default priority order per data type, plus the Yahoo adapter for bulk US quotes."""
    yahoo = YahooQuoteSource(timeout=settings.yahoo_api_timeout, transport=transport)
    us_timeout = settings.us_stock_scraping_timeout
    jp_timeout = settings.jp_stock_scraping_timeout
    chains = {
        DataType.US_STOCK: [
            Source.of(yahoo),
            Source.of(yahoo_finance_web(timeout=us_timeout, transport=transport)),
            Source.of(marketwatch(timeout=us_timeout, transport=transport)),
        ],
        DataType.JP_STOCK: [
            Source.of(yahoo_finance_japan(timeout=jp_timeout, transport=transport)),
            Source.of(minkabu(timeout=jp_timeout, transport=transport)),
            Source.of(kabutan(timeout=jp_timeout, transport=transport)),
        ],
        DataType.MUTUAL_FUND: [
            Source.of(MorningstarCsvSource(timeout=settings.mutual_fund_timeout, transport=transport)),
        ],
        DataType.EXCHANGE_RATE: [
            Source.of(ExchangeRateHostSource(timeout=settings.exchange_rate_timeout, transport=transport)),
            Source.of(StaticRateSource(settings.default_exchange_rate)),
        ],
    }
    return chains, yahoo


class MarketDataService:
    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        chains: dict[DataType, list[Source]],
        *,
        batch: BatchExecutor | None = None,
        bulk_source: YahooQuoteSource | None = None,
        snapshot: SnapshotStore | None = None,
        settings: Settings | None = None,
        redis_client: aioredis.Redis | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._orchestrator = orchestrator
        self._chains = chains
        self._batch = batch or BatchExecutor(orchestrator, settings=self._settings)
        self._bulk = bulk_source
        self._snapshot = snapshot
        self._redis = redis_client

    @property
    def ledger(self) -> BlacklistLedger:
        return self._orchestrator.ledger

    def _request(self, symbol: str, data_type: DataType | str, *, refresh: bool, use_cache: bool) -> FetchRequest:
        dtype = DataType.coerce(data_type)
        return FetchRequest(
            symbol=symbol,
            data_type=dtype,
            sources=list(self._chains.get(dtype, [])),
            default_values=default_values_for(dtype, self._settings),
            use_cache=use_cache,
            refresh=refresh,
        )

    # ── retrieval ─────────────────────────────────────────────────────

    async def fetch_one(
        self,
        symbol: str,
        data_type: DataType | str,
        *,
        refresh: bool = False,
        use_cache: bool = True,
    ) -> MarketDataRecord:
        return await self._orchestrator.fetch(
            self._request(symbol, data_type, refresh=refresh, use_cache=use_cache)
        )

    async def fetch_batch(
        self,
        symbols: list[str],
        data_type: DataType | str,
        *,
        refresh: bool = False,
    ) -> dict[str, MarketDataRecord]:
        dtype = DataType.coerce(data_type)
        template = self._request("", dtype, refresh=refresh, use_cache=True)
        request = BatchFetchRequest(
            symbols=list(symbols),
            template=template,
            batch_size=self._settings.batch_size,
            delay_between_batches=self._settings.batch_delay,
            # Scraped JP pages and fund CSVs are throttled per symbol.
            stagger=dtype in (DataType.JP_STOCK, DataType.MUTUAL_FUND),
            rate_limit_delay=self._settings.rate_limit_delay,
            bulk_source=self._bulk.fetch_many if (self._bulk and dtype is DataType.US_STOCK) else None,
        )
        return await self._batch.fetch_batch(request)

    async def get_exchange_rate(self, base: str, target: str, *, refresh: bool = False) -> MarketDataRecord:
        return await self.fetch_one(pair_symbol(base, target), DataType.EXCHANGE_RATE, refresh=refresh)

    # ── admin ─────────────────────────────────────────────────────────

    async def list_blacklisted(self) -> dict[str, list[BlacklistEntry]]:
        grouped: dict[str, list[BlacklistEntry]] = defaultdict(list)
        for entry in await self.ledger.get_blacklisted_symbols():
            grouped[entry.market].append(entry)
        return dict(grouped)

    async def cleanup_expired_blacklist(self) -> int:
        result = await self.ledger.cleanup_blacklist()
        if not result.success:
            logger.error("blacklist cleanup failed: %s", result.error)
        return result.cleaned_items

    async def get_failed_symbols(self, date_key: str | None = None, data_type: DataType | str | None = None) -> list[str]:
        if not isinstance(self._snapshot, SnapshotFallbackStore):
            return []
        return await self._snapshot.get_failed_symbols(date_key, data_type)

    async def get_failure_statistics(self, days: int = 7) -> dict[str, Any]:
        if not isinstance(self._snapshot, SnapshotFallbackStore):
            return {"total_failures": 0, "by_date": {}, "by_type": {}, "by_symbol": {}, "most_failed_symbols": []}
        return await self._snapshot.get_failure_statistics(days)

    async def prewarm_cache(self, symbols_by_type: dict[DataType, list[str]] | None = None) -> dict[str, int]:
        """Refresh-fetch popular symbols; returns how many per type came from a live source."""
        targets = symbols_by_type or PREWARM_SYMBOLS
        summary: dict[str, int] = {}
        for data_type, symbols in targets.items():
            dtype = DataType.coerce(data_type)
            if not symbols:
                summary[dtype.value] = 0
                continue
            records = await self.fetch_batch(symbols, dtype, refresh=True)
            live = sum(1 for r in records.values() if r.source not in _FALLBACK_SOURCES)
            summary[dtype.value] = live
            logger.info("Pre-warmed %s: %d/%d live", dtype.value, live, len(symbols))
        return summary

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()


def create_service(
    settings: Settings | None = None,
    *,
    redis_client: aioredis.Redis | None = None,
    cache: CacheStore | None = None,
    alerts: AlertSink | None = None,
    sampler: Sampler = random_sampler,
    transport: httpx.AsyncBaseTransport | None = None,
) -> MarketDataService:
    """Production wiring: Redis-backed cache and ledger, httpx sources, alert sink."""
    settings = settings or get_settings()
    redis_client = redis_client or aioredis.from_url(settings.redis_url, decode_responses=True)

    if alerts is None:
        if settings.alert_webhook_url:
            inner: AlertSink = WebhookAlertSink(settings.alert_webhook_url, service_name=settings.service_name)
        else:
            inner = LoggingAlertSink()
        alerts = ThrottledAlertSink(inner, settings.alert_throttle_minutes)

    ledger = BlacklistLedger(
        RedisBlacklistStore(redis_client),
        max_failures=settings.blacklist_max_failures,
        cooldown_days=settings.blacklist_cooldown_days,
        alerts=alerts,
    )
    snapshot = SnapshotFallbackStore(
        settings.snapshot_base_url,
        redis_client=redis_client,
        refresh_seconds=settings.snapshot_refresh_seconds,
        local_dir=settings.snapshot_local_dir or None,
        failure_ttl_seconds=settings.failure_log_ttl_seconds,
        transport=transport,
    )
    orchestrator = FallbackOrchestrator(
        cache or RedisCache(redis_client),
        ledger,
        snapshot,
        alerts=alerts,
        sampler=sampler,
        settings=settings,
    )
    chains, yahoo = build_source_chains(settings, transport)
    return MarketDataService(
        orchestrator,
        chains,
        batch=BatchExecutor(orchestrator, alerts=alerts, settings=settings),
        bulk_source=yahoo,
        snapshot=snapshot,
        settings=settings,
        redis_client=redis_client,
    )
