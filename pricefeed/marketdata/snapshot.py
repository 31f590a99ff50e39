"""Last-resort snapshot dataset and the failed-fetch log.

The snapshot is four JSON files (stocks, ETFs, funds, FX rates) published to
a static location and refreshed periodically. When every live source and the
cache fail, the orchestrator asks this store for the symbol's last published
values before falling back to hardcoded defaults.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from pricefeed.marketdata.models import DataType, MarketDataRecord
from pricefeed.utils import safe_float, utc_now, utc_now_iso

logger = logging.getLogger(__name__)

_DATASET_FILES = {
    "stocks": "fallback-stocks.json",
    "etfs": "fallback-etfs.json",
    "mutual_funds": "fallback-funds.json",
    "exchange_rates": "fallback-rates.json",
}

_CATEGORIES_BY_TYPE = {
    DataType.US_STOCK: ("stocks", "etfs"),
    DataType.JP_STOCK: ("stocks", "etfs"),
    DataType.MUTUAL_FUND: ("mutual_funds",),
    DataType.EXCHANGE_RATE: ("exchange_rates",),
}

_FAILURE_KEY = "pricefeed:failure:{data_type}:{symbol}"
_FAILURE_DAY_KEY = "pricefeed:failures:{date_key}:{data_type}"
_FAILURE_COUNT_KEY = "pricefeed:failure-count:{date_key}:{data_type}"
_TOP_FAILED = 20


@runtime_checkable
class SnapshotStore(Protocol):
    async def get_fallback_for_symbol(self, symbol: str, data_type: DataType | str) -> MarketDataRecord | None: ...

    async def record_failed_fetch(self, symbol: str, data_type: DataType | str, reason: str) -> bool: ...


def _empty_dataset() -> dict[str, dict[str, Any]]:
    return {category: {} for category in _DATASET_FILES}


def snapshot_entry_to_record(symbol: str, data_type: DataType, entry: dict[str, Any]) -> MarketDataRecord:
    """Published entries use the upstream camelCase layout; FX entries carry ``rate``."""
    price = safe_float(entry.get("price"))
    if price is None:
        price = safe_float(entry.get("rate"))
    extra = {k: entry[k] for k in ("pair", "base", "target") if k in entry}
    return MarketDataRecord(
        symbol=symbol,
        price=price,
        change=safe_float(entry.get("change"), 0.0),
        change_percent=safe_float(entry.get("changePercent", entry.get("change_percent")), 0.0),
        currency=str(entry.get("currency") or entry.get("target") or ""),
        name=str(entry.get("name") or symbol),
        last_updated=str(entry.get("lastUpdated") or entry.get("last_updated") or utc_now_iso()),
        source=str(entry.get("source") or "snapshot"),
        is_stock=data_type in (DataType.US_STOCK, DataType.JP_STOCK),
        is_mutual_fund=data_type is DataType.MUTUAL_FUND,
        price_label=entry.get("priceLabel") or entry.get("price_label"),
        extra=extra,
    )


class SnapshotFallbackStore:
    """Periodically refreshed snapshot plus a Redis-backed failure log."""

    def __init__(
        self,
        base_url: str,
        *,
        redis_client: aioredis.Redis | None = None,
        refresh_seconds: float = 3600.0,
        local_dir: str | None = None,
        failure_ttl_seconds: int = 30 * 86400,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._redis = redis_client
        self._refresh_s = refresh_seconds
        self._local_dir = Path(local_dir) if local_dir else None
        self._failure_ttl = failure_ttl_seconds
        self._timeout = timeout
        self._transport = transport
        self._data = _empty_dataset()
        self._loaded_at: float | None = None
        self._attempted_at: float | None = None
        self._lock = asyncio.Lock()

    # ── dataset ───────────────────────────────────────────────────────

    async def get_fallback_data(self, force_refresh: bool = False) -> dict[str, dict[str, Any]]:
        async with self._lock:
            # A failed refresh also waits out the interval before the next attempt.
            now = time.monotonic()
            fresh = self._attempted_at is not None and (now - self._attempted_at) < self._refresh_s
            if fresh and not force_refresh:
                return self._data

            self._attempted_at = now
            data = await self._fetch_remote()
            if data is not None:
                self._data = data
                self._loaded_at = time.monotonic()
                logger.info("Snapshot fallback data refreshed from %s", self._base_url)
                return self._data

            if self._loaded_at is not None:
                logger.warning("Snapshot refresh failed; using stale data")
                return self._data

            local = self._load_local()
            if local is not None:
                self._data = local
                self._loaded_at = time.monotonic()
                logger.info("Using local snapshot files from %s", self._local_dir)
                return self._data

            logger.warning("No snapshot data available; retrying in %.0fs", self._refresh_s)
            return self._data

    async def _fetch_remote(self) -> dict[str, dict[str, Any]] | None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            responses = await asyncio.gather(
                *[client.get(f"{self._base_url}/{name}") for name in _DATASET_FILES.values()],
                return_exceptions=True,
            )

        data = _empty_dataset()
        loaded = 0
        for category, resp in zip(_DATASET_FILES, responses):
            if isinstance(resp, BaseException):
                logger.warning("snapshot %s fetch failed: %s", category, resp)
                continue
            if resp.status_code != 200:
                logger.warning("snapshot %s returned HTTP %d", category, resp.status_code)
                continue
            try:
                payload = resp.json()
            except ValueError:
                logger.warning("snapshot %s is not valid JSON", category)
                continue
            if isinstance(payload, dict):
                data[category] = payload
                loaded += 1
        return data if loaded else None

    def _load_local(self) -> dict[str, dict[str, Any]] | None:
        if self._local_dir is None:
            return None
        data = _empty_dataset()
        loaded = 0
        for category, name in _DATASET_FILES.items():
            path = self._local_dir / name
            if not path.is_file():
                continue
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("could not read local snapshot %s: %s", path, exc)
                continue
            if isinstance(payload, dict):
                data[category] = payload
                loaded += 1
        return data if loaded else None

    async def get_fallback_for_symbol(self, symbol: str, data_type: DataType | str) -> MarketDataRecord | None:
        dtype = DataType.coerce(data_type)
        data = await self.get_fallback_data()
        for category in _CATEGORIES_BY_TYPE[dtype]:
            entry = data.get(category, {}).get(symbol)
            if isinstance(entry, dict):
                try:
                    return snapshot_entry_to_record(symbol, dtype, entry)
                except ValueError as exc:
                    logger.warning("ignoring bad snapshot entry for %s: %s", symbol, exc)
                    return None
        return None

    # ── failure log ───────────────────────────────────────────────────

    async def record_failed_fetch(self, symbol: str, data_type: DataType | str, reason: str) -> bool:
        dtype = DataType.coerce(data_type).value
        if self._redis is None:
            logger.info("failed fetch %s (%s): %s", symbol, dtype, reason)
            return False

        now = utc_now()
        date_key = now.strftime("%Y-%m-%d")
        failure_key = _FAILURE_KEY.format(data_type=dtype, symbol=symbol)
        day_key = _FAILURE_DAY_KEY.format(date_key=date_key, data_type=dtype)
        count_key = _FAILURE_COUNT_KEY.format(date_key=date_key, data_type=dtype)
        try:
            await self._redis.hset(
                failure_key,
                mapping={
                    "symbol": symbol,
                    "type": dtype,
                    "reason": reason[:500],
                    "timestamp": now.isoformat(),
                    "date_key": date_key,
                },
            )
            await self._redis.expire(failure_key, self._failure_ttl)
            await self._redis.sadd(day_key, symbol)
            await self._redis.expire(day_key, self._failure_ttl)
            await self._redis.incr(count_key)
            await self._redis.expire(count_key, self._failure_ttl)
        except RedisError as exc:
            logger.error("failed to record failed fetch for %s: %s", symbol, exc)
            return False
        return True

    async def get_failed_symbols(self, date_key: str | None = None, data_type: DataType | str | None = None) -> list[str]:
        """Symbols that exhausted every source on ``date_key`` (default: today, UTC)."""
        if self._redis is None:
            return []
        date_key = date_key or utc_now().strftime("%Y-%m-%d")
        types = [DataType.coerce(data_type)] if data_type else list(DataType)
        symbols: set[str] = set()
        try:
            for dtype in types:
                members = await self._redis.smembers(
                    _FAILURE_DAY_KEY.format(date_key=date_key, data_type=dtype.value)
                )
                symbols.update(members or ())
        except RedisError as exc:
            logger.error("failed to read failed symbols for %s: %s", date_key, exc)
            return []
        return sorted(symbols)

    async def get_failure_statistics(self, days: int = 7) -> dict[str, Any]:
        """Failed-fetch totals over the last ``days`` UTC days, newest first.

        ``total_failures`` and ``by_type`` sum the per-day counters (one per
        exhausted chain). ``by_symbol`` counts the days a symbol failed on,
        and ``most_failed_symbols`` is its top 20.
        """
        stats: dict[str, Any] = {
            "total_failures": 0,
            "by_date": {},
            "by_type": {},
            "by_symbol": {},
            "most_failed_symbols": [],
        }
        if self._redis is None:
            return stats

        today = utc_now()
        by_symbol: dict[str, int] = {}
        try:
            for offset in range(max(days, 0)):
                date_key = (today - timedelta(days=offset)).strftime("%Y-%m-%d")
                day = {"total": 0, "by_type": {}}
                for dtype in DataType:
                    raw = await self._redis.get(_FAILURE_COUNT_KEY.format(date_key=date_key, data_type=dtype.value))
                    count = int(raw or 0)
                    if count:
                        day["total"] += count
                        day["by_type"][dtype.value] = count
                        stats["by_type"][dtype.value] = stats["by_type"].get(dtype.value, 0) + count
                    members = await self._redis.smembers(
                        _FAILURE_DAY_KEY.format(date_key=date_key, data_type=dtype.value)
                    )
                    for symbol in members or ():
                        by_symbol[symbol] = by_symbol.get(symbol, 0) + 1
                stats["by_date"][date_key] = day
                stats["total_failures"] += day["total"]
        except (RedisError, ValueError) as exc:
            logger.error("failed to read failure statistics: %s", exc)
            return {"error": str(exc), "total_failures": 0}

        stats["by_symbol"] = by_symbol
        ranked = sorted(by_symbol.items(), key=lambda item: (-item[1], item[0]))[:_TOP_FAILED]
        stats["most_failed_symbols"] = [{"symbol": s, "count": n} for s, n in ranked]
        return stats
