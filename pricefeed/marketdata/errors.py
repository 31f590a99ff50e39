"""Error taxonomy for the retrieval engine."""

from __future__ import annotations


class PriceFeedError(Exception):
    """Base class for all pricefeed errors."""


class InvalidRequestError(PriceFeedError, ValueError):
    """Malformed fetch request (programmer/config error); never swallowed."""


class StoreError(PriceFeedError):
    """Cache or blacklist backend unavailable."""


class SourceError(PriceFeedError):
    """A source adapter failed to produce a record."""

    def __init__(self, source: str, message: str, *, retryable: bool = False) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.retryable = retryable


class SymbolNotFoundError(SourceError):
    """Upstream answered but knows nothing about the symbol."""


class ParseError(SourceError):
    """Upstream answered with a payload we could not parse (e.g. selector mismatch)."""
