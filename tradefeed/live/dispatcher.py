"""
Message Dispatcher for the live trade feed.

Classifies decoded inbound frames and applies them: trade batches go to the
TradeBuffer, control frames update exchange/pair/clock state, and both emit
notifications through the hub.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from tradefeed.live.buffer import TradeBuffer
from tradefeed.live.clock import ClockSkewCompensator
from tradefeed.live.errors import MessageParseError
from tradefeed.live.events import Notification, NotificationHub
from tradefeed.live.exchanges import ExchangeSet
from tradefeed.live.frames import ExchangeErrorFrame, ExchangeFrame, PairFrame, WelcomeFrame
from tradefeed.live.types import Alert, AlertType, DispatcherStats, MessageType, Trade

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """
    Routes decoded frames to state updates and notifications.

    Frame shapes:
        [[exchange, ts, price, size, side], ...]   trade batch
        {"type": "welcome", ...}                   control frame

    Anything else, and control frames with an unrecognized type, are dropped
    without a notification.
    """

    CONTROL_TYPE_MAP: dict[str, MessageType] = {
        "welcome": MessageType.WELCOME,
        "pair": MessageType.PAIR,
        "exchange_connected": MessageType.EXCHANGE_CONNECTED,
        "exchange_disconnected": MessageType.EXCHANGE_DISCONNECTED,
        "exchange_error": MessageType.EXCHANGE_ERROR,
    }

    FRAME_MODELS: dict[MessageType, type[BaseModel]] = {
        MessageType.WELCOME: WelcomeFrame,
        MessageType.PAIR: PairFrame,
        MessageType.EXCHANGE_CONNECTED: ExchangeFrame,
        MessageType.EXCHANGE_DISCONNECTED: ExchangeFrame,
        MessageType.EXCHANGE_ERROR: ExchangeErrorFrame,
    }

    def __init__(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        exchanges: ExchangeSet,
        compensator: ClockSkewCompensator,
        debug: bool = False,
        name: str = "dispatcher",
    ) -> None:
        """
        Args:
            hub: Notification hub shared by the feed components
            buffer: Trade buffer receiving live batches
            exchanges: Connected exchange set
            compensator: Clock-skew compensator (recomputed on welcome)
            debug: Emit per-exchange status alerts
            name: Name for logging purposes
        """
        self._hub = hub
        self._buffer = buffer
        self._exchanges = exchanges
        self._compensator = compensator
        self._debug = debug
        self._name = name

        self._pair: Optional[str] = None
        self._stats = DispatcherStats()

        self._control_handlers: dict[MessageType, Callable[[Any, dict[str, Any]], None]] = {
            MessageType.WELCOME: self._handle_welcome,
            MessageType.PAIR: self._handle_pair,
            MessageType.EXCHANGE_CONNECTED: self._handle_exchange_connected,
            MessageType.EXCHANGE_DISCONNECTED: self._handle_exchange_disconnected,
            MessageType.EXCHANGE_ERROR: self._handle_exchange_error,
        }

    @property
    def stats(self) -> DispatcherStats:
        return self._stats

    @property
    def pair(self) -> Optional[str]:
        """Currently tracked instrument."""
        return self._pair

    def set_pair(self, pair: Optional[str], forced: bool = False) -> None:
        """Replace the tracked pair and emit `pair`."""
        self._pair = pair
        self._hub.emit(Notification.PAIR, pair, forced)

    def classify(self, payload: Any) -> MessageType:
        """Detect the frame type without applying it."""
        if isinstance(payload, list):
            return MessageType.TRADES if payload else MessageType.UNKNOWN
        if isinstance(payload, dict):
            frame_type = payload.get("type")
            if isinstance(frame_type, str):
                return self.CONTROL_TYPE_MAP.get(frame_type, MessageType.UNKNOWN)
        return MessageType.UNKNOWN

    def dispatch(self, payload: Any) -> MessageType:
        """
        Apply a decoded frame.

        Malformed frames are logged and dropped; this method never raises
        MessageParseError.

        Returns:
            The frame classification (UNKNOWN for dropped frames).
        """
        self._stats.total_messages += 1
        message_type = self.classify(payload)

        type_key = message_type.value
        self._stats.by_type[type_key] = self._stats.by_type.get(type_key, 0) + 1

        if message_type == MessageType.UNKNOWN:
            self._stats.dropped_messages += 1
            if isinstance(payload, dict):
                logger.debug(f"[{self._name}] Ignoring control frame type: {payload.get('type')!r}")
            else:
                logger.debug(f"[{self._name}] Ignoring frame of type {type(payload).__name__}")
            return message_type

        try:
            if message_type == MessageType.TRADES:
                self._handle_trades(payload)
            else:
                frame = self._parse_frame(message_type, payload)
                self._control_handlers[message_type](frame, payload)
        except MessageParseError as e:
            self._stats.parse_errors += 1
            self._stats.dropped_messages += 1
            logger.warning(f"[{self._name}] Dropping malformed {type_key} frame: {e}")
            return MessageType.UNKNOWN

        self._stats.dispatched_messages += 1
        return message_type

    def _parse_frame(self, message_type: MessageType, payload: dict[str, Any]) -> BaseModel:
        model = self.FRAME_MODELS[message_type]
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise MessageParseError(
                f"Invalid {message_type.value} frame: {e.error_count()} validation error(s)",
                expected_type=message_type.value,
                component="MessageDispatcher",
            ) from e

    # --- Trade batches ---

    def _handle_trades(self, payload: list[Any]) -> None:
        trades = [Trade.from_wire(row) for row in payload]

        # Server order is not guaranteed; sorted() is stable for equal timestamps
        trades = sorted(trades, key=lambda t: t.timestamp)
        trades = self._compensator.correct(trades)

        self._buffer.append(trades)
        self._stats.trades_accepted += len(trades)

        self._hub.emit(Notification.TRADES, trades)

    # --- Control frames ---

    def _alert(self, alert: Alert) -> None:
        self._hub.emit(Notification.ALERT, alert)

    def _handle_welcome(self, frame: WelcomeFrame, raw: dict[str, Any]) -> None:
        self._hub.emit(Notification.WELCOME, raw)

        if frame.admin:
            self._hub.emit(Notification.ADMIN)

        self._compensator.compute_offset(frame.timestamp)

        connected = [exchange.id for exchange in frame.exchanges if exchange.connected]
        self._exchanges.replace(connected)

        self.set_pair(frame.pair, forced=True)

        if connected:
            message = "On " + ", ".join(connected).upper()
        else:
            message = "No connected exchanges"
        self._alert(
            Alert(
                id="server_status",
                type=AlertType.INFO,
                title=f"Tracking {frame.pair}",
                message=message,
            )
        )
        logger.info(f"[{self._name}] Welcome: tracking {frame.pair}, {message.lower()}")

    def _handle_pair(self, frame: PairFrame, raw: dict[str, Any]) -> None:
        self.set_pair(frame.pair)
        self._alert(Alert(id="pair", type=AlertType.INFO, title=f"Now tracking {frame.pair}"))
        logger.info(f"[{self._name}] Now tracking {frame.pair}")

    def _handle_exchange_connected(self, frame: ExchangeFrame, raw: dict[str, Any]) -> None:
        if self._debug:
            self._alert(
                Alert(
                    id=f"{frame.id}_status",
                    type=AlertType.SUCCESS,
                    message=f"[{frame.id}] connected",
                    data={"type": "connected", "exchange": frame.id},
                )
            )
        self._exchanges.add(frame.id)

    def _handle_exchange_disconnected(self, frame: ExchangeFrame, raw: dict[str, Any]) -> None:
        if self._debug:
            self._alert(
                Alert(
                    id=f"{frame.id}_status",
                    type=AlertType.ERROR,
                    message=f"[{frame.id}] disconnected",
                    data={"type": "disconnected", "exchange": frame.id},
                )
            )
        self._exchanges.remove(frame.id)

    def _handle_exchange_error(self, frame: ExchangeErrorFrame, raw: dict[str, Any]) -> None:
        logger.warning(f"[{self._name}] Exchange {frame.id} reported an error: {frame.message}")
        if self._debug:
            self._alert(
                Alert(
                    id=f"{frame.id}_status",
                    type=AlertType.ERROR,
                    title=f"[{frame.id}] an error occured",
                    message=frame.message,
                )
            )

    def reset_stats(self) -> None:
        self._stats = DispatcherStats()
