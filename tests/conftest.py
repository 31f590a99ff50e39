from __future__ import annotations

import fnmatch
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from pricefeed.config import Settings
from pricefeed.marketdata.blacklist import BlacklistLedger
from pricefeed.marketdata.models import BlacklistEntry, MarketDataRecord


class MemoryCache:
    def __init__(self) -> None:
        self.data: dict[str, dict[str, Any]] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        return self.data.get(key)

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> bool:
        self.data[key] = dict(value)
        self.ttls[key] = ttl_seconds
        return True


class MemoryBlacklistStore:
    """Keeps every write in ``history`` so tests can see intermediate counts."""

    def __init__(self) -> None:
        self.entries: dict[tuple[str, str], BlacklistEntry] = {}
        self.history: list[BlacklistEntry] = []

    async def get(self, market: str, symbol: str) -> BlacklistEntry | None:
        entry = self.entries.get((market, symbol))
        return BlacklistEntry.from_dict(entry.to_dict()) if entry else None

    async def put(self, entry: BlacklistEntry) -> None:
        copy = BlacklistEntry.from_dict(entry.to_dict())
        self.entries[(entry.market, entry.symbol)] = copy
        self.history.append(copy)

    async def delete(self, market: str, symbol: str) -> None:
        self.entries.pop((market, symbol), None)

    async def scan(self) -> list[BlacklistEntry]:
        return list(self.entries.values())


class FakeRedis:
    """The handful of redis.asyncio calls the stores make, decode_responses style."""

    def __init__(self) -> None:
        self.kv: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.expiry: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self.kv.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.kv[key] = value
        self.expiry[key] = ttl

    async def incr(self, key: str) -> int:
        value = int(self.kv.get(key, "0")) + 1
        self.kv[key] = str(value)
        return value

    async def delete(self, *keys: str) -> int:
        n = 0
        for key in keys:
            for store in (self.kv, self.hashes, self.sets):
                if store.pop(key, None) is not None:
                    n += 1
        return n

    async def hset(self, key: str, mapping: dict[str, Any]) -> int:
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def sadd(self, key: str, *members: str) -> int:
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    async def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    async def expire(self, key: str, ttl: int) -> bool:
        self.expiry[key] = ttl
        return True

    async def scan_iter(self, match: str = "*"):  # noqa: ANN201
        for key in list(self.hashes):
            if fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self) -> None:
        return None


class RecordingAlerts:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(self, title: str, error: BaseException | str, context: dict[str, Any]) -> None:
        self.sent.append((title, str(error), context))

    def titles(self) -> list[str]:
        return [t for t, _, _ in self.sent]


class Clock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def quote(symbol: str, price: float | None, **kw: Any) -> MarketDataRecord:
    return MarketDataRecord(symbol=symbol, price=price, is_stock=True, **kw)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        retry_max_retries=1,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        source_delay=0.0,
        batch_delay=0.0,
        rate_limit_delay=0.0,
        alert_sample_rate=0.1,
    )


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def store() -> MemoryBlacklistStore:
    return MemoryBlacklistStore()


@pytest.fixture
def alerts() -> RecordingAlerts:
    return RecordingAlerts()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def ledger(store: MemoryBlacklistStore, alerts: RecordingAlerts, clock: Clock) -> BlacklistLedger:
    return BlacklistLedger(store, max_failures=3, cooldown_days=7, alerts=alerts, clock=clock)
