"""Per-symbol circuit breaker ("blacklist") and its Redis persistence.

A symbol that fails ``max_failures`` consecutive times in a market is
quarantined for ``cooldown_days``: while quarantined the orchestrator serves
fallback data without touching any live source. One success clears the
state entirely; an expired cooldown is deleted lazily on the next lookup.

Entries are keyed by (market, symbol) so the same ticker string in two asset
classes never shares failure state.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from pricefeed.marketdata.alerts import AlertSink, safe_notify
from pricefeed.marketdata.errors import StoreError
from pricefeed.marketdata.models import BlacklistEntry
from pricefeed.utils import parse_iso, utc_now

logger = logging.getLogger(__name__)

_KEY_PREFIX = "pricefeed:blacklist:"


# ── persistence ───────────────────────────────────────────────────────

@runtime_checkable
class BlacklistStore(Protocol):
    async def get(self, market: str, symbol: str) -> BlacklistEntry | None: ...

    async def put(self, entry: BlacklistEntry) -> None: ...

    async def delete(self, market: str, symbol: str) -> None: ...

    async def scan(self) -> list[BlacklistEntry]: ...


class RedisBlacklistStore:
    """One Redis hash per entry at ``pricefeed:blacklist:{market}:{symbol}``.

    Expects a client created with ``decode_responses=True``.
    """

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client

    @staticmethod
    def _key(market: str, symbol: str) -> str:
        return f"{_KEY_PREFIX}{market}:{symbol}"

    async def get(self, market: str, symbol: str) -> BlacklistEntry | None:
        try:
            raw = await self._redis.hgetall(self._key(market, symbol))
        except RedisError as exc:
            raise StoreError(f"blacklist read failed for {market}:{symbol}") from exc
        return BlacklistEntry.from_dict(raw) if raw else None

    async def put(self, entry: BlacklistEntry) -> None:
        mapping = {k: ("" if v is None else v) for k, v in entry.to_dict().items()}
        try:
            await self._redis.hset(self._key(entry.market, entry.symbol), mapping=mapping)
        except RedisError as exc:
            raise StoreError(f"blacklist write failed for {entry.market}:{entry.symbol}") from exc

    async def delete(self, market: str, symbol: str) -> None:
        try:
            await self._redis.delete(self._key(market, symbol))
        except RedisError as exc:
            raise StoreError(f"blacklist delete failed for {market}:{symbol}") from exc

    async def scan(self) -> list[BlacklistEntry]:
        entries: list[BlacklistEntry] = []
        try:
            async for key in self._redis.scan_iter(match=f"{_KEY_PREFIX}*"):
                raw = await self._redis.hgetall(key)
                if raw:
                    entries.append(BlacklistEntry.from_dict(raw))
        except RedisError as exc:
            raise StoreError("blacklist scan failed") from exc
        return entries


# ── ledger ────────────────────────────────────────────────────────────

@dataclass
class FailureResult:
    symbol: str
    failure_count: int = 0
    is_blacklisted: bool = False
    error: str | None = None


@dataclass
class CleanupResult:
    success: bool
    cleaned_items: int = 0
    error: str | None = None


class BlacklistLedger:
    """Consecutive-failure counter with threshold + cooldown."""

    def __init__(
        self,
        store: BlacklistStore,
        *,
        max_failures: int = 3,
        cooldown_days: int = 7,
        alerts: AlertSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.max_failures = max_failures
        self.cooldown_days = cooldown_days
        self._alerts = alerts
        self._clock = clock

    async def is_blacklisted(self, symbol: str, market: str) -> bool:
        try:
            entry = await self._store.get(market, symbol)
        except StoreError as exc:
            # Unknown state: let the fetch go ahead.
            logger.warning("blacklist check failed for %s (%s): %s", symbol, market, exc)
            return False

        if entry is None or entry.market != market:
            return False
        if entry.failure_count < self.max_failures or not entry.cooldown_until:
            return False

        now = self._clock()
        cooldown_until = parse_iso(entry.cooldown_until)
        if now > cooldown_until:
            await self.remove(symbol, market)
            return False

        remaining_days = math.ceil((cooldown_until - now).total_seconds() / 86400)
        logger.info("Symbol %s (%s) is blacklisted. Cooldown remaining: %d days", symbol, market, remaining_days)
        return True

    async def record_failure(self, symbol: str, market: str, reason: str = "Unknown error") -> FailureResult:
        now = self._clock()
        try:
            entry = await self._store.get(market, symbol)
            if entry is None:
                entry = BlacklistEntry(symbol=symbol, market=market, first_failure=now.isoformat())

            entry.failure_count += 1
            entry.last_failure = now.isoformat()
            entry.reason = reason[:500]

            crossed = entry.failure_count == self.max_failures
            if entry.failure_count >= self.max_failures:
                entry.cooldown_until = (now + timedelta(days=self.cooldown_days)).isoformat()

            await self._store.put(entry)
        except StoreError as exc:
            logger.error("failed to record failure for %s (%s): %s", symbol, market, exc)
            return FailureResult(symbol=symbol, error=str(exc))

        if crossed:
            logger.warning(
                "Symbol %s (%s) blacklisted after %d consecutive failures until %s",
                symbol, market, entry.failure_count, entry.cooldown_until,
            )
            await safe_notify(
                self._alerts,
                "Symbol Added to Blacklist",
                f"{symbol} ({market}) has been blacklisted after {entry.failure_count} consecutive failures.",
                {
                    "symbol": symbol,
                    "market": market,
                    "failure_count": entry.failure_count,
                    "cooldown_until": entry.cooldown_until,
                    "reason": entry.reason,
                },
            )

        return FailureResult(
            symbol=symbol,
            failure_count=entry.failure_count,
            is_blacklisted=entry.failure_count >= self.max_failures,
        )

    async def record_success(self, symbol: str, market: str) -> bool:
        try:
            entry = await self._store.get(market, symbol)
            if entry is None:
                return True
            if entry.failure_count >= self.max_failures:
                await self._store.delete(market, symbol)
                logger.info("Symbol %s (%s) recovered; removed from blacklist", symbol, market)
                return True
            entry.failure_count = 0
            entry.cooldown_until = None
            entry.last_success = self._clock().isoformat()
            await self._store.put(entry)
        except StoreError as exc:
            logger.error("failed to record success for %s (%s): %s", symbol, market, exc)
            return False
        return True

    async def remove(self, symbol: str, market: str) -> bool:
        try:
            await self._store.delete(market, symbol)
        except StoreError as exc:
            logger.error("failed to remove %s (%s) from blacklist: %s", symbol, market, exc)
            return False
        logger.info("Removed %s (%s) from blacklist", symbol, market)
        return True

    async def get_blacklisted_symbols(self) -> list[BlacklistEntry]:
        """Entries whose cooldown is still running."""
        try:
            entries = await self._store.scan()
        except StoreError as exc:
            logger.error("failed to list blacklisted symbols: %s", exc)
            return []
        now = self._clock()
        return [e for e in entries if e.cooldown_until and parse_iso(e.cooldown_until) > now]

    async def cleanup_blacklist(self) -> CleanupResult:
        """Delete entries whose cooldown has passed (housekeeping job)."""
        now = self._clock()
        try:
            entries = await self._store.scan()
            expired = [e for e in entries if e.cooldown_until and parse_iso(e.cooldown_until) < now]
            for entry in expired:
                await self._store.delete(entry.market, entry.symbol)
        except StoreError as exc:
            logger.error("blacklist cleanup failed: %s", exc)
            return CleanupResult(success=False, error=str(exc))
        logger.info("Blacklist cleanup removed %d expired entries", len(expired))
        return CleanupResult(success=True, cleaned_items=len(expired))
