"""Single-symbol fallback orchestration.

Order of resolution for one ``FetchRequest``:

1. cache (unless ``refresh`` or ``use_cache=False``)
2. circuit breaker: a blacklisted symbol is served from the snapshot or the
   request's defaults without touching any live source
3. the source chain, each attempt wrapped in ``with_retry``
4. snapshot, then defaults, when every source failed

Network and parse failures never escape ``fetch``; only a malformed request
(``InvalidRequestError``) does, and it is raised before any I/O.
"""

from __future__ import annotations

import logging
from typing import Any

from pricefeed.config import Settings, get_settings
from pricefeed.marketdata.alerts import AlertSink, Sampler, random_sampler, safe_notify
from pricefeed.marketdata.blacklist import BlacklistLedger
from pricefeed.marketdata.cache import CacheStore
from pricefeed.marketdata.chain import Source, try_in_order
from pricefeed.marketdata.models import (
    SOURCE_DEFAULT,
    SOURCE_SNAPSHOT,
    DataType,
    FetchRequest,
    MarketDataRecord,
)
from pricefeed.marketdata.retry import with_retry
from pricefeed.marketdata.snapshot import SnapshotStore
from pricefeed.utils import utc_now_iso

logger = logging.getLogger(__name__)

_TYPE_LABELS = {
    DataType.US_STOCK: "US Stock",
    DataType.JP_STOCK: "Japanese Stock",
    DataType.MUTUAL_FUND: "Mutual Fund",
    DataType.EXCHANGE_RATE: "Exchange Rate",
}


def default_record(request: FetchRequest, **overrides: Any) -> MarketDataRecord:
    """Build the last-resort record from ``request.default_values``.

    ``default_values["prices"]`` may map individual symbols to their own
    placeholder price; otherwise ``default_values["price"]`` applies.
    """
    values = dict(request.default_values)
    values.update(overrides)
    price = (values.get("prices") or {}).get(request.symbol, values.get("price"))
    is_instrument = request.data_type is not DataType.EXCHANGE_RATE
    is_fund = request.data_type is DataType.MUTUAL_FUND
    return MarketDataRecord(
        symbol=request.symbol,
        price=price,
        change=values.get("change", 0.0),
        change_percent=values.get("change_percent", 0.0),
        currency=values.get("currency", ""),
        name=values.get("name") or request.symbol,
        last_updated=utc_now_iso(),
        source=values.get("source", SOURCE_DEFAULT),
        is_stock=is_instrument and not is_fund,
        is_mutual_fund=is_fund,
        is_blacklisted=values.get("is_blacklisted"),
        price_label=values.get("price_label"),
        extra=dict(values.get("extra") or {}),
    )


class FallbackOrchestrator:
    """Cache → circuit breaker → source chain → snapshot → defaults."""

    def __init__(
        self,
        cache: CacheStore,
        ledger: BlacklistLedger,
        snapshot: SnapshotStore | None = None,
        *,
        alerts: AlertSink | None = None,
        sampler: Sampler = random_sampler,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._cache = cache
        self._ledger = ledger
        self._snapshot = snapshot
        self._alerts = alerts
        self._sampler = sampler

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def ledger(self) -> BlacklistLedger:
        return self._ledger

    async def fetch(self, request: FetchRequest) -> MarketDataRecord:
        request.validate()
        symbol = request.symbol
        market = request.data_type.value

        # ── 1. cache ──────────────────────────────────────────────────
        if request.use_cache and not request.refresh:
            cached = await self.read_cached(request.cache_key)
            if cached is not None:
                logger.debug("cache hit for %s", request.cache_key)
                return cached

        # ── 2. circuit breaker ────────────────────────────────────────
        if await self._ledger.is_blacklisted(symbol, market):
            logger.info("Using fallback data for blacklisted symbol %s (%s)", symbol, market)
            record = await self._fallback_record(request, blacklisted=True)
            await self.write_cached(request.cache_key, record, self._settings.blacklisted_cache_ttl)
            return record

        # ── 3. source chain ───────────────────────────────────────────
        async def _attempt(source: Source, sym: str) -> MarketDataRecord | None:
            return await with_retry(
                lambda: source(sym),
                max_retries=self._settings.retry_max_retries,
                base_delay=self._settings.retry_base_delay,
                max_delay=self._settings.retry_max_delay,
            )

        failures: list[str] = []

        async def _on_failure(source: Source, exc: BaseException) -> None:
            message = str(exc) or type(exc).__name__
            failures.append(f"{source.name}: {message}")
            await self._ledger.record_failure(symbol, market, f"{source.name}: {message}")
            if self._sampler(self._settings.alert_sample_rate):
                await safe_notify(
                    self._alerts,
                    f"{source.name} Data Retrieval Failed",
                    exc,
                    {"symbol": symbol, "data_type": market, "source": source.name},
                )

        hit = await try_in_order(
            [Source.of(s) for s in request.sources],
            symbol,
            call=_attempt,
            on_failure=_on_failure,
            delay=self._settings.source_delay,
        )
        if hit is not None:
            record, source = hit
            if not record.source:
                record.source = source.name
            record.symbol = record.symbol or symbol
            await self._ledger.record_success(symbol, market)
            ttl = request.cache_ttl or self._settings.cache_ttl_for(market)
            await self.write_cached(request.cache_key, record, ttl)
            logger.info("Fetched %s (%s) from %s: %s", symbol, market, record.source, record.price)
            return record

        # ── 4. exhausted ──────────────────────────────────────────────
        reason = "All Sources: " + ("; ".join(failures) or "no usable data")
        await self._ledger.record_failure(symbol, market, reason)
        if self._snapshot is not None:
            await self._snapshot.record_failed_fetch(symbol, request.data_type, reason)
        if self._sampler(self._settings.alert_sample_rate):
            label = _TYPE_LABELS.get(request.data_type, market)
            await safe_notify(
                self._alerts,
                f"All {label} Data Sources Failed",
                reason,
                {"symbol": symbol, "data_type": market, "sources": [Source.of(s).name for s in request.sources]},
            )

        logger.warning("All sources failed for %s (%s); serving fallback", symbol, market)
        record = await self._fallback_record(request, blacklisted=False)
        await self.write_cached(request.cache_key, record, self._settings.fallback_cache_ttl)
        return record

    # ── helpers ───────────────────────────────────────────────────────

    async def _fallback_record(self, request: FetchRequest, *, blacklisted: bool) -> MarketDataRecord:
        record: MarketDataRecord | None = None
        if self._snapshot is not None:
            try:
                record = await self._snapshot.get_fallback_for_symbol(request.symbol, request.data_type)
            except Exception as exc:
                logger.warning("snapshot lookup failed for %s: %s", request.symbol, exc)
                record = None
        if record is not None and record.has_usable_price():
            record.extra.setdefault("snapshot_source", record.source)
            record.source = SOURCE_SNAPSHOT
        else:
            record = default_record(request, source=SOURCE_DEFAULT)
        record.is_blacklisted = blacklisted
        return record

    async def read_cached(self, key: str) -> MarketDataRecord | None:
        payload = await self._cache.get(key)
        if not payload:
            return None
        try:
            record = MarketDataRecord.from_dict(payload)
        except (TypeError, ValueError) as exc:
            logger.warning("discarding bad cache payload for %s: %s", key, exc)
            return None
        record.from_cache = True
        return record

    async def write_cached(self, key: str, record: MarketDataRecord, ttl: int) -> None:
        payload = record.to_dict()
        payload["from_cache"] = False
        await self._cache.set(key, payload, ttl)
