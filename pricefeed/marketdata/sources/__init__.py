"""Source adapters: each is a named async ``symbol -> MarketDataRecord`` callable."""

from pricefeed.marketdata.sources.fund import MorningstarCsvSource
from pricefeed.marketdata.sources.fx import ExchangeRateHostSource, StaticRateSource, pair_symbol, parse_pair
from pricefeed.marketdata.sources.scraping import (
    HtmlQuoteSource,
    kabutan,
    marketwatch,
    minkabu,
    yahoo_finance_japan,
    yahoo_finance_web,
)
from pricefeed.marketdata.sources.yahoo import YahooQuoteSource, yahoo_symbol

__all__ = [
    "ExchangeRateHostSource",
    "HtmlQuoteSource",
    "MorningstarCsvSource",
    "StaticRateSource",
    "YahooQuoteSource",
    "kabutan",
    "marketwatch",
    "minkabu",
    "pair_symbol",
    "parse_pair",
    "yahoo_finance_japan",
    "yahoo_finance_web",
    "yahoo_symbol",
]
