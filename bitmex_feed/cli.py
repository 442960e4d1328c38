"""bitmex-feed CLI entrypoint.

Subcommands:
- stream: connect to the realtime feed and print book/trade notifications
- instruments: download the instrument list
- trades: download trade history for one symbol

Notifications and REST records are written to stdout as JSON lines; logs
go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import orjson

from bitmex_feed.client import BitmexFeedClient
from bitmex_feed.config import (
    BITMEX_REST_ENDPOINTS,
    FeedConfig,
    RestConfig,
    Venue,
    load_config,
)
from bitmex_feed.errors import FeedError
from bitmex_feed.publisher import FeedObserver
from bitmex_feed.rest import BitmexRestClient
from bitmex_feed.types import FeedStale, OrderBookSnapshot, TradeEvent

logger = logging.getLogger(__name__)


class JsonLinesObserver(FeedObserver):
    """Writes every notification to a stream as one JSON object per line."""

    def __init__(self, out=None) -> None:
        self._out = out if out is not None else sys.stdout

    def _write(self, kind: str, payload: object) -> None:
        line = orjson.dumps({"type": kind, "data": payload}, default=str)
        self._out.write(line.decode() + "\n")
        self._out.flush()

    async def on_book_update(self, snapshot: OrderBookSnapshot) -> None:
        self._write("book", snapshot)

    async def on_trade(self, trade: TradeEvent) -> None:
        self._write("trade", trade)

    async def on_stale(self, stale: FeedStale) -> None:
        self._write("stale", stale)


def _timestamp(value: str) -> datetime:
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid ISO timestamp: {value!r}") from e
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="bitmex-feed")
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    sub = p.add_subparsers(dest="command", required=True)

    def add_venue(sp: argparse.ArgumentParser) -> None:
        sp.add_argument(
            "--venue",
            choices=[v.value for v in Venue],
            default=Venue.BITMEX.value,
            help="Exchange environment",
        )

    # stream
    stream = sub.add_parser("stream", help="Stream order books and trades")
    add_venue(stream)
    stream.add_argument(
        "--symbols",
        nargs="+",
        default=[],
        help="Symbols to request orderBook25 snapshots for",
    )
    stream.add_argument("--config", type=Path, help="Path to a TOML config file")
    stream.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Seconds to stream before exiting (default: until interrupted)",
    )

    # instruments
    instruments = sub.add_parser("instruments", help="Download the instrument list")
    add_venue(instruments)
    instruments.add_argument("--state", default=None, help="Keep only this state, e.g. Open")

    # trades
    trades = sub.add_parser("trades", help="Download trade history")
    add_venue(trades)
    trades.add_argument("--symbol", required=True)
    trades.add_argument("--count", type=int, default=None)
    trades.add_argument("--start", type=_timestamp, default=None, help="ISO-8601 start time")
    trades.add_argument("--end", type=_timestamp, default=None, help="ISO-8601 end time")
    return p


def resolve_stream_config(
    venue: str, symbols: list[str], config_path: Optional[Path] = None
) -> FeedConfig:
    """File config (or venue defaults), with --symbols added to the queued requests."""
    if config_path is not None:
        config = load_config(config_path)
    else:
        config = FeedConfig(venue=Venue(venue))

    if symbols:
        merged = tuple(dict.fromkeys((*config.subscription.symbols, *symbols)))
        config = replace(config, subscription=replace(config.subscription, symbols=merged))
    return config


async def run_stream(config: FeedConfig, duration: Optional[float] = None) -> int:
    client = BitmexFeedClient(config)
    client.add_observer(JsonLinesObserver())

    async with client:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
        logger.info(f"Stream stats: {client.get_stats()}")
    return 0


def run_instruments(venue: str, state: Optional[str]) -> int:
    rest_config = RestConfig(base_url=BITMEX_REST_ENDPOINTS[Venue(venue)])
    with BitmexRestClient(rest_config) as rest:
        for instrument in rest.instruments(state=state):
            print(instrument.model_dump_json())
    return 0


def run_trades(
    venue: str,
    symbol: str,
    count: Optional[int],
    start: Optional[datetime],
    end: Optional[datetime],
) -> int:
    rest_config = RestConfig(base_url=BITMEX_REST_ENDPOINTS[Venue(venue)])
    with BitmexRestClient(rest_config) as rest:
        for record in rest.trades(symbol, count=count, start=start, end=end):
            print(record.model_dump_json())
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "stream":
            config = resolve_stream_config(args.venue, args.symbols, args.config)
            return asyncio.run(run_stream(config, args.duration))
        if args.command == "instruments":
            return run_instruments(args.venue, args.state)
        if args.command == "trades":
            return run_trades(args.venue, args.symbol, args.count, args.start, args.end)
    except KeyboardInterrupt:
        return 130
    except (FeedError, FileNotFoundError) as e:
        logger.error(str(e))
        return 1

    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
