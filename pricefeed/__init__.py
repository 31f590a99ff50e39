"""pricefeed: resilient multi-source market-data retrieval."""

__version__ = "0.1.0"
