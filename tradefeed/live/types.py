"""
Shared types, enums, and data structures for the live trade feed.

This module contains types that are used across multiple components
of the feed system.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from tradefeed.live.errors import MessageParseError

Millis = int  # Milliseconds since epoch


class ConnectionState(str, Enum):
    """State machine for the WebSocket connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AWAITING_RECONNECT = "awaiting_reconnect"


class MessageType(str, Enum):
    """Classification of inbound frames."""

    TRADES = "trades"
    WELCOME = "welcome"
    PAIR = "pair"
    EXCHANGE_CONNECTED = "exchange_connected"
    EXCHANGE_DISCONNECTED = "exchange_disconnected"
    EXCHANGE_ERROR = "exchange_error"
    UNKNOWN = "unknown"


class AlertType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Trade:
    """
    A single executed trade.

    Wire form is the positional tuple [exchange?, timestamp, price, size, side?].
    """

    exchange: Optional[str]
    timestamp: Millis
    price: float
    size: float
    side: Optional[str] = None

    @classmethod
    def from_wire(cls, row: Any) -> "Trade":
        """
        Parse a positional trade tuple.

        Accepted shapes (exchange may be null):
            [exchange, timestamp, price, size]
            [exchange, timestamp, price, size, side]
        """
        if not isinstance(row, (list, tuple)) or not 4 <= len(row) <= 5:
            raise MessageParseError(
                f"Trade must be a 4-5 element sequence, got {row!r:.80}",
                expected_type="trade",
            )
        exchange = row[0]
        side = row[4] if len(row) == 5 else None
        try:
            return cls(
                exchange=None if exchange is None else str(exchange),
                timestamp=int(row[1]),
                price=float(row[2]),
                size=float(row[3]),
                side=None if side is None else str(side),
            )
        except (ValueError, TypeError) as e:
            raise MessageParseError(
                f"Invalid trade fields: {row!r:.80}",
                expected_type="trade",
            ) from e

    def to_wire(self) -> list[Any]:
        row: list[Any] = [self.exchange, self.timestamp, self.price, self.size]
        if self.side is not None:
            row.append(self.side)
        return row

    def shifted(self, delta_ms: Millis) -> "Trade":
        """Return a copy with the timestamp moved by delta_ms."""
        return replace(self, timestamp=self.timestamp + delta_ms)


@dataclass(frozen=True)
class Alert:
    """Alert record for the display layer to render."""

    id: str
    type: AlertType
    message: Optional[str] = None
    title: Optional[str] = None
    data: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class FetchProgress:
    """Download progress of a historical backfill."""

    loaded: int
    total: Optional[int]

    @property
    def progress(self) -> Optional[float]:
        """Fraction downloaded, or None when the total size is unknown."""
        if not self.total:
            return None
        return self.loaded / self.total


@dataclass
class ConnectionHealth:
    """Health snapshot for the WebSocket connection."""

    state: ConnectionState
    url: str
    connected_since: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    reconnect_count: int = 0
    message_count: int = 0
    error_count: int = 0
    parse_errors: int = 0
    last_error: Optional[str] = None
    reconnect_delay_s: Optional[float] = None

    @property
    def uptime_s(self) -> Optional[float]:
        """Connection uptime in seconds, or None if not connected."""
        if self.connected_since is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.connected_since).total_seconds()

    @property
    def is_healthy(self) -> bool:
        return self.state == ConnectionState.CONNECTED


@dataclass
class ConnectionMetrics:
    """Counters for a WebSocket connection."""

    messages_received: int = 0
    bytes_received: int = 0
    parse_errors: int = 0
    reconnections: int = 0
    errors: int = 0

    connected_at: Optional[float] = None  # monotonic time
    last_message_at: Optional[float] = None  # monotonic time


@dataclass
class DispatcherStats:
    """Statistics for frame dispatching."""

    total_messages: int = 0
    dispatched_messages: int = 0
    dropped_messages: int = 0
    parse_errors: int = 0
    trades_accepted: int = 0
    by_type: dict[str, int] = field(default_factory=dict)


@dataclass
class HistoryStats:
    """Statistics for historical backfills."""

    requests: int = 0
    deduplicated: int = 0
    superseded: int = 0
    failures: int = 0
    trades_received: int = 0
