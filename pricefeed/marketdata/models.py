"""Data contracts shared by the cache, the ledger, and the orchestrator."""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pricefeed.marketdata.errors import InvalidRequestError
from pricefeed.utils import utc_now_iso

if TYPE_CHECKING:
    from pricefeed.marketdata.chain import Source


class DataType(str, enum.Enum):
    """Asset class; doubles as the blacklist market and the cache key prefix."""

    US_STOCK = "us-stock"
    JP_STOCK = "jp-stock"
    MUTUAL_FUND = "mutual-fund"
    EXCHANGE_RATE = "exchange-rate"

    @classmethod
    def coerce(cls, value: DataType | str) -> DataType:
        try:
            return cls(value)
        except ValueError:
            raise InvalidRequestError(
                f"Unknown data type {value!r}. Expected one of: {[d.value for d in cls]}"
            ) from None


SOURCE_SNAPSHOT = "snapshot-fallback"
SOURCE_DEFAULT = "default-fallback"
SOURCE_ERROR = "error"


@dataclass
class MarketDataRecord:
    """Canonical result unit returned for every requested symbol."""

    symbol: str
    price: float | None
    change: float | None = 0.0
    change_percent: float | None = 0.0
    currency: str = ""
    name: str = ""
    last_updated: str = field(default_factory=utc_now_iso)
    source: str = ""
    is_stock: bool = False
    is_mutual_fund: bool = False
    is_blacklisted: bool | None = None
    from_cache: bool = False
    price_label: str | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.price is not None and self.price < 0:
            raise ValueError(f"negative price for {self.symbol}: {self.price}")

    def has_usable_price(self) -> bool:
        return self.price is not None and self.price > 0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketDataRecord:
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class BlacklistEntry:
    """Circuit-breaker state for one (market, symbol)."""

    symbol: str
    market: str
    failure_count: int = 0
    first_failure: str | None = None
    last_failure: str | None = None
    cooldown_until: str | None = None
    reason: str = ""
    last_success: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlacklistEntry:
        known = {f.name for f in dataclasses.fields(cls)}
        out = {k: v for k, v in data.items() if k in known}
        out["failure_count"] = int(out.get("failure_count") or 0)
        for key in ("first_failure", "last_failure", "cooldown_until", "last_success"):
            # Redis hashes cannot hold None; empty string round-trips as "unset".
            if out.get(key) == "":
                out[key] = None
        return cls(**out)


@dataclass
class FetchRequest:
    """Single-symbol request handed to the fallback orchestrator."""

    symbol: str
    data_type: DataType
    sources: list[Source]
    default_values: dict[str, Any] = field(default_factory=dict)
    use_cache: bool = True
    refresh: bool = False
    cache_ttl: int | None = None

    @property
    def cache_key(self) -> str:
        return f"{self.data_type.value}:{self.symbol}"

    def validate(self) -> None:
        if not isinstance(self.symbol, str) or not self.symbol.strip():
            raise InvalidRequestError("symbol must be a non-empty string")
        self.data_type = DataType.coerce(self.data_type)
        if not self.sources:
            raise InvalidRequestError(f"no sources configured for {self.symbol}")
        if self.cache_ttl is not None and self.cache_ttl <= 0:
            raise InvalidRequestError("cache_ttl must be positive")

    def for_symbol(self, symbol: str) -> FetchRequest:
        return dataclasses.replace(self, symbol=symbol)


BulkSource = Callable[[list[str]], Awaitable[dict[str, MarketDataRecord]]]


@dataclass
class BatchFetchRequest:
    """Many symbols sharing one request template."""

    symbols: list[str]
    template: FetchRequest
    batch_size: int = 10
    delay_between_batches: float = 0.5
    stagger: bool = False
    rate_limit_delay: float = 0.5
    bulk_source: BulkSource | None = None

    def validate(self) -> None:
        if not self.symbols:
            raise InvalidRequestError("symbols must not be empty")
        if any(not isinstance(s, str) or not s.strip() for s in self.symbols):
            raise InvalidRequestError("symbols must be non-empty strings")
        if self.batch_size < 1:
            raise InvalidRequestError("batch_size must be >= 1")
        if self.delay_between_batches < 0 or self.rate_limit_delay < 0:
            raise InvalidRequestError("delays must be >= 0")
        self.template.data_type = DataType.coerce(self.template.data_type)
        if not self.template.sources:
            raise InvalidRequestError("no sources configured for batch")
        if self.template.cache_ttl is not None and self.template.cache_ttl <= 0:
            raise InvalidRequestError("cache_ttl must be positive")
