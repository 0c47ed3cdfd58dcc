"""
Trade Feed - top-level service.

Coordinates all feed components:
- NotificationHub for listener registration
- TradeBuffer and ExchangeSet as shared state
- ClockSkewCompensator for server drift
- MessageDispatcher for inbound frames
- ConnectionManager for WebSocket lifecycle
- HistoryFetcher for backfills
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

import aiohttp

from tradefeed.live.buffer import TradeBuffer
from tradefeed.live.clock import Clock, ClockSkewCompensator
from tradefeed.live.config import FeedConfig
from tradefeed.live.connection import ConnectionManager
from tradefeed.live.dispatcher import MessageDispatcher
from tradefeed.live.errors import HistoryFetchError
from tradefeed.live.events import Listener, Notification, NotificationHub, Subscription
from tradefeed.live.exchanges import ExchangeSet
from tradefeed.live.history import HistoryFetcher
from tradefeed.live.types import ConnectionHealth, ConnectionState, Millis, Trade

logger = logging.getLogger(__name__)


class TradeFeed:
    """
    Explicitly owned trade feed service.

    Create one per process (or per tracked server), hand the instance to the
    consumers that need it, and stop it on shutdown.

    Usage:
        feed = TradeFeed(FeedConfig(connection=ConnectionConfig(url="wss://...")))
        feed.on("trades", lambda batch: print(len(batch)))

        await feed.start()
        # ... feed running ...
        await feed.stop()
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        clock: Optional[Clock] = None,
        session: Optional[aiohttp.ClientSession] = None,
        name: str = "feed",
    ) -> None:
        """
        Args:
            config: Feed configuration (defaults to FeedConfig())
            clock: Local time source (defaults to RealtimeClock)
            session: Optional aiohttp session shared by WebSocket and HTTP calls
            name: Name for logging purposes
        """
        self._config = config or FeedConfig()
        self._name = name

        self.hub = NotificationHub(name=f"{name}_hub")
        self.buffer = TradeBuffer(hub=self.hub)
        self.exchanges = ExchangeSet(hub=self.hub)
        self.compensator = ClockSkewCompensator(
            clock=clock, threshold_ms=self._config.clock.skew_threshold_ms
        )

        self.dispatcher = MessageDispatcher(
            hub=self.hub,
            buffer=self.buffer,
            exchanges=self.exchanges,
            compensator=self.compensator,
            debug=self._config.debug,
            name=f"{name}_dispatcher",
        )
        self.connection = ConnectionManager(
            config=self._config.connection,
            hub=self.hub,
            on_message=self.dispatcher.dispatch,
            housekeeping=self._housekeeping if self._config.retention_s else None,
            housekeeping_interval_s=self._config.housekeeping_interval_s,
            session=session,
            name=f"{name}_ws",
        )
        self.history = HistoryFetcher(
            config=self._config.history,
            http_base=self._config.http_base,
            hub=self.hub,
            buffer=self.buffer,
            compensator=self.compensator,
            session=session,
            name=f"{name}_history",
        )

    @property
    def config(self) -> FeedConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def trades(self) -> list[Trade]:
        return self.buffer.snapshot()

    @property
    def pair(self) -> Optional[str]:
        return self.dispatcher.pair

    @property
    def clock_offset(self) -> Millis:
        return self.compensator.offset

    @property
    def delayed(self) -> bool:
        return self.compensator.delayed

    # --- Lifecycle ---

    async def start(self) -> None:
        """
        Connect and, if configured, load the initial history window.

        A failing initial backfill is surfaced as an alert and logged; the
        live connection keeps running.
        """
        logger.info(f"[{self._name}] Starting trade feed for {self._config.url}")
        self.connection.connect()

        if self._config.initial_history_minutes:
            try:
                await self.fetch(self._config.initial_history_minutes)
            except HistoryFetchError as e:
                logger.warning(f"[{self._name}] Initial history unavailable: {e}")

    async def stop(self) -> None:
        """Disconnect and release HTTP resources. Accepted trades are kept."""
        logger.info(f"[{self._name}] Stopping trade feed")
        await self.connection.disconnect()
        await self.history.close()

    async def __aenter__(self) -> "TradeFeed":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # --- Operations ---

    def on(self, name: Union[Notification, str], callback: Listener) -> Subscription:
        """Subscribe to a notification (see tradefeed.live.events)."""
        return self.hub.subscribe(name, callback)

    def off(self, subscription: Subscription) -> bool:
        return self.hub.unsubscribe(subscription)

    async def send(self, method: str, message: Any = None) -> bool:
        return await self.connection.send(method, message)

    async def fetch(
        self,
        from_: float,
        to: Optional[float] = None,
        replace: bool = False,
    ) -> Optional[list[Trade]]:
        return await self.history.fetch(from_, to, replace)

    def trim(self, cutoff_ts: Millis) -> int:
        return self.buffer.trim(cutoff_ts)

    def clear(self) -> None:
        """Reset trades and exchanges. The only way accepted trades are dropped."""
        self.buffer.clear()
        self.exchanges.clear()

    def _housekeeping(self) -> None:
        if not self._config.retention_s:
            return
        cutoff = self.compensator.clock.now() - int(self._config.retention_s * 1000)
        removed = self.buffer.trim(cutoff)
        if removed:
            logger.debug(f"[{self._name}] Housekeeping trimmed {removed} trades")

    # --- Introspection ---

    def get_health(self) -> ConnectionHealth:
        return self.connection.get_health()

    def get_stats(self) -> dict[str, Any]:
        """Get statistics summary."""
        dispatcher_stats = self.dispatcher.stats
        history_stats = self.history.stats
        return {
            "state": self.state.value,
            "pair": self.pair,
            "exchanges": self.exchanges.ids,
            "trades": len(self.buffer),
            "clock_offset_ms": self.clock_offset,
            "delayed": self.delayed,
            "dispatcher": {
                "total_messages": dispatcher_stats.total_messages,
                "dispatched_messages": dispatcher_stats.dispatched_messages,
                "dropped_messages": dispatcher_stats.dropped_messages,
                "parse_errors": dispatcher_stats.parse_errors,
                "trades_accepted": dispatcher_stats.trades_accepted,
                "by_type": dict(dispatcher_stats.by_type),
            },
            "history": {
                "requests": history_stats.requests,
                "deduplicated": history_stats.deduplicated,
                "superseded": history_stats.superseded,
                "failures": history_stats.failures,
                "trades_received": history_stats.trades_received,
            },
        }
