"""
Live Trade Feed Module.

Maintains a live feed of market trades from a streaming server and reconciles
it with on-demand historical backfills into a single time-ordered trade buffer.

Components:
- TradeFeed: Top-level service owning every component below
- ConnectionManager: WebSocket lifecycle and backoff reconnection
- MessageDispatcher: Frame classification and state updates
- TradeBuffer: Ordered trades (append, boundary merge, trim)
- HistoryFetcher: Deduplicated, sequenced backfill requests
- ClockSkewCompensator: Server/local clock offset correction
- NotificationHub: Observer registry with a closed set of notifications

Usage:
    from tradefeed.live import ConnectionConfig, FeedConfig, TradeFeed

    feed = TradeFeed(FeedConfig(connection=ConnectionConfig(url="wss://feed.example.com")))
    feed.on("trades", handle_batch)
    await feed.start()
"""

from tradefeed.live.buffer import TradeBuffer
from tradefeed.live.clock import ClockSkewCompensator, RealtimeClock, SimClock
from tradefeed.live.config import ClockConfig, ConnectionConfig, FeedConfig, HistoryConfig
from tradefeed.live.connection import ConnectionManager
from tradefeed.live.dispatcher import MessageDispatcher
from tradefeed.live.errors import (
    ConfigurationError,
    ConnectionError,
    HistoryFetchError,
    MessageParseError,
    TradeFeedError,
)
from tradefeed.live.events import Notification, NotificationHub, Subscription
from tradefeed.live.exchanges import ExchangeSet
from tradefeed.live.feed import TradeFeed
from tradefeed.live.history import HistoryFetcher
from tradefeed.live.types import (
    Alert,
    AlertType,
    ConnectionHealth,
    ConnectionState,
    FetchProgress,
    MessageType,
    Trade,
)

__all__ = [
    # Main entry point
    "TradeFeed",
    "FeedConfig",
    "ConnectionConfig",
    "HistoryConfig",
    "ClockConfig",
    # Components
    "ConnectionManager",
    "MessageDispatcher",
    "TradeBuffer",
    "ExchangeSet",
    "HistoryFetcher",
    "ClockSkewCompensator",
    "RealtimeClock",
    "SimClock",
    "NotificationHub",
    "Notification",
    "Subscription",
    # Types
    "Trade",
    "Alert",
    "AlertType",
    "FetchProgress",
    "ConnectionState",
    "ConnectionHealth",
    "MessageType",
    # Errors
    "TradeFeedError",
    "ConnectionError",
    "MessageParseError",
    "HistoryFetchError",
    "ConfigurationError",
]
