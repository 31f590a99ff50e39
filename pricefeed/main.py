"""pricefeed CLI.

    python -m pricefeed.main fetch AAPL --type us-stock
    python -m pricefeed.main batch 7203 9984 --type jp-stock
    python -m pricefeed.main fx USD JPY
    python -m pricefeed.main blacklist list
    python -m pricefeed.main blacklist cleanup
    python -m pricefeed.main failures --date 2026-10-19
    python -m pricefeed.main failures --stats --days 7
    python -m pricefeed.main prewarm
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any

from pricefeed import __version__
from pricefeed.config import get_settings
from pricefeed.marketdata.models import DataType
from pricefeed.marketdata.service import MarketDataService, create_service
from pricefeed.utils import setup_logging

logger = logging.getLogger("pricefeed")

_TYPES = [d.value for d in DataType]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pricefeed", description="Resilient market-data retrieval")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    fetch = sub.add_parser("fetch", help="Fetch one symbol")
    fetch.add_argument("symbol")
    fetch.add_argument("--type", dest="data_type", choices=_TYPES, default=DataType.US_STOCK.value)
    fetch.add_argument("--refresh", action="store_true", help="Bypass the cache")

    batch = sub.add_parser("batch", help="Fetch many symbols of one type")
    batch.add_argument("symbols", nargs="+")
    batch.add_argument("--type", dest="data_type", choices=_TYPES, default=DataType.US_STOCK.value)
    batch.add_argument("--refresh", action="store_true", help="Bypass the cache")

    fx = sub.add_parser("fx", help="Fetch an exchange rate")
    fx.add_argument("base")
    fx.add_argument("target")
    fx.add_argument("--refresh", action="store_true", help="Bypass the cache")

    bl = sub.add_parser("blacklist", help="Inspect or clean the symbol blacklist")
    bl.add_argument("action", choices=["list", "cleanup"])

    failures = sub.add_parser("failures", help="Symbols that exhausted every source on a day")
    failures.add_argument("--date", dest="date_key", default=None, help="YYYY-MM-DD (default: today, UTC)")
    failures.add_argument("--type", dest="data_type", choices=_TYPES, default=None)
    failures.add_argument("--stats", action="store_true", help="Aggregate counts instead of a symbol list")
    failures.add_argument("--days", type=int, default=7, help="Window for --stats (default: 7)")

    sub.add_parser("prewarm", help="Refresh the cache for popular symbols")
    return parser


async def _dispatch(service: MarketDataService, args: argparse.Namespace) -> Any:
    if args.command == "fetch":
        return (await service.fetch_one(args.symbol, args.data_type, refresh=args.refresh)).to_dict()
    if args.command == "batch":
        records = await service.fetch_batch(args.symbols, args.data_type, refresh=args.refresh)
        return {sym: rec.to_dict() for sym, rec in records.items()}
    if args.command == "fx":
        return (await service.get_exchange_rate(args.base, args.target, refresh=args.refresh)).to_dict()
    if args.command == "blacklist":
        if args.action == "cleanup":
            return {"cleaned_items": await service.cleanup_expired_blacklist()}
        grouped = await service.list_blacklisted()
        return {market: [asdict(e) for e in entries] for market, entries in grouped.items()}
    if args.command == "failures":
        if args.stats:
            return await service.get_failure_statistics(args.days)
        return await service.get_failed_symbols(args.date_key, args.data_type)
    if args.command == "prewarm":
        return await service.prewarm_cache()
    raise ValueError(f"unknown command {args.command!r}")


async def _amain(args: argparse.Namespace) -> int:
    service = create_service()
    try:
        result = await _dispatch(service, args)
    finally:
        await service.close()
    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(get_settings().log_level)
    try:
        return asyncio.run(_amain(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
