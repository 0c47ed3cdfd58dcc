"""tradefeed CLI entrypoint.

Connects to a trade streaming server, optionally backfills recent history, and
logs trade batches, exchange changes, and alerts until interrupted.

Usage: tradefeed --url wss://feed.example.com --history-minutes 15 --debug

Options:
  --url TEXT               Streaming server URL (default: $TRADEFEED_URL or ws://localhost:3000)
  --history-minutes FLOAT  Backfill the last N minutes on start
  --retention-s FLOAT      Trim trades older than this while connected
  --max-reconnect-delay-s  Ceiling for the reconnect backoff
  --debug                  Emit per-exchange status alerts
  --log-level LEVEL        Logging level (default: INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from dataclasses import replace
from typing import Optional

from tradefeed.live.config import FeedConfig
from tradefeed.live.errors import ConfigurationError
from tradefeed.live.events import Notification
from tradefeed.live.feed import TradeFeed
from tradefeed.live.types import Alert, AlertType, Trade

logger = logging.getLogger("tradefeed.cli")


def build_parser() -> argparse.ArgumentParser:
    """
    Return the CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="tradefeed", description="Live trade feed monitor")
    p.add_argument("--url", help="Streaming server URL (ws:// or wss://)")
    p.add_argument(
        "--history-minutes",
        type=float,
        default=None,
        help="Backfill the last N minutes on start",
    )
    p.add_argument(
        "--retention-s",
        type=float,
        default=None,
        help="Trim trades older than this many seconds while connected",
    )
    p.add_argument(
        "--max-reconnect-delay-s",
        type=float,
        default=None,
        help="Ceiling for the reconnect backoff",
    )
    p.add_argument("--debug", action="store_true", help="Emit per-exchange status alerts")
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return p


def build_config(args: argparse.Namespace, base: Optional[FeedConfig] = None) -> FeedConfig:
    """Layer CLI arguments over the environment-derived config."""
    config = base if base is not None else FeedConfig.from_env()

    connection = config.connection
    if args.url:
        connection = replace(connection, url=args.url)
    if args.max_reconnect_delay_s is not None:
        connection = replace(connection, max_reconnect_delay_s=args.max_reconnect_delay_s)

    return replace(
        config,
        connection=connection,
        debug=config.debug or args.debug,
        retention_s=args.retention_s if args.retention_s is not None else config.retention_s,
        initial_history_minutes=(
            args.history_minutes
            if args.history_minutes is not None
            else config.initial_history_minutes
        ),
    )


def attach_loggers(feed: TradeFeed) -> None:
    """Log the notifications a terminal user cares about."""

    def on_alert(alert: Alert) -> None:
        level = logging.ERROR if alert.type == AlertType.ERROR else logging.INFO
        text = " - ".join(part for part in (alert.title, alert.message) if part)
        logger.log(level, f"[{alert.id}] {text}")

    def on_trades(batch: list[Trade]) -> None:
        last = batch[-1]
        logger.info(f"{len(batch)} trades, last {last.exchange} {last.price} x {last.size}")

    feed.on(Notification.ALERT, on_alert)
    feed.on(Notification.TRADES, on_trades)
    feed.on(Notification.EXCHANGES, lambda ids: logger.info(f"Exchanges: {', '.join(ids)}"))
    feed.on(
        Notification.HISTORY,
        lambda replaced: logger.info(f"History loaded ({len(feed.buffer)} trades)"),
    )


async def run(config: FeedConfig) -> int:
    feed = TradeFeed(config)
    attach_loggers(feed)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await feed.start()
    try:
        await stop.wait()
    finally:
        await feed.stop()
        logger.info(f"Stopped: {feed.get_stats()}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_config(args)
    except ConfigurationError as e:
        parser.error(str(e))

    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
