"""
WebSocket Connection Manager for the live trade feed.

Handles WebSocket lifecycle including:
- Connection establishment with timeout
- Growing backoff reconnection with a single pending timer
- Frame decoding, with malformed frames dropped instead of tearing down the socket
- Periodic housekeeping while connected
- Connection-level metrics and health tracking
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

import aiohttp
import orjson

from tradefeed.live.config import ConnectionConfig
from tradefeed.live.errors import ConnectionError, MessageParseError
from tradefeed.live.events import Notification, NotificationHub
from tradefeed.live.types import (
    Alert,
    AlertType,
    ConnectionHealth,
    ConnectionMetrics,
    ConnectionState,
)

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Owns the single WebSocket connection and its reconnect loop.

    State Machine:
        [DISCONNECTED] --connect()--> [CONNECTING] --open--> [CONNECTED]
              ^                            |                      |
              |                          error/close            close
              |                            v                      v
        [AWAITING_RECONNECT] <--reconnect()-- [DISCONNECTED] <----+

    There is no terminal state: after any close the manager schedules another
    attempt. Only disconnect() leaves the loop.

    The ConnectionManager does NOT interpret frames - it decodes JSON and
    hands the payload to the on_message callback (MessageDispatcher.dispatch).

    Usage:
        manager = ConnectionManager(
            config=ConnectionConfig(url="wss://feed.example.com"),
            hub=hub,
            on_message=dispatcher.dispatch,
        )
        manager.connect()
        # ... later ...
        await manager.disconnect()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        hub: NotificationHub,
        on_message: Callable[[Any], Any],
        housekeeping: Optional[Callable[[], None]] = None,
        housekeeping_interval_s: float = 60.0,
        session: Optional[aiohttp.ClientSession] = None,
        name: str = "connection",
    ) -> None:
        """
        Initialize the connection manager.

        Args:
            config: Connection configuration
            hub: Notification hub for lifecycle notifications and alerts
            on_message: Callback receiving each decoded payload
            housekeeping: Optional periodic task run while connected
            housekeeping_interval_s: Period of the housekeeping task
            session: Optional aiohttp session (owned by the caller)
            name: Name for logging purposes
        """
        self._config = config
        self._hub = hub
        self._on_message = on_message
        self._housekeeping = housekeeping
        self._housekeeping_interval_s = housekeeping_interval_s
        self._name = name

        # State
        self._state = ConnectionState.DISCONNECTED
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

        # Tasks
        self._run_task: Optional[asyncio.Task[None]] = None
        self._housekeeping_task: Optional[asyncio.Task[None]] = None

        # Reconnection state
        self._reconnect_delay_s = config.initial_reconnect_delay_s
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._should_reconnect = True

        # Metrics
        self._metrics = ConnectionMetrics()
        self._connected_at: Optional[datetime] = None
        self._last_message_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def url(self) -> str:
        return self._config.url

    @property
    def reconnect_delay_s(self) -> float:
        """Delay that the next reconnect() call will schedule."""
        return self._reconnect_delay_s

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def metrics(self) -> ConnectionMetrics:
        return self._metrics

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")

    # --- Public API ---

    def connect(self) -> None:
        """
        Open the connection in a background task.

        No-op while a connection is open or opening. Must be called from
        within a running event loop.
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            logger.debug(f"[{self._name}] Already connected or connecting")
            return

        self._should_reconnect = True
        self._cancel_reconnect()
        self._set_state(ConnectionState.CONNECTING)
        self._run_task = asyncio.get_running_loop().create_task(
            self._run(), name=f"{self._name}_run"
        )

    def reconnect(self) -> None:
        """
        Schedule a connection attempt after the current backoff delay.

        Replaces any pending attempt, then grows the delay for the next one.
        """
        if self._state == ConnectionState.CONNECTED or not self._should_reconnect:
            return

        self._cancel_reconnect()

        delay = self._reconnect_delay_s
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._on_reconnect_timer)
        self._set_state(ConnectionState.AWAITING_RECONNECT)
        logger.info(f"[{self._name}] Reconnecting in {delay:.2f}s")

        next_delay = delay * self._config.reconnect_growth
        if self._config.max_reconnect_delay_s is not None:
            next_delay = min(next_delay, self._config.max_reconnect_delay_s)
        self._reconnect_delay_s = next_delay

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting. Idempotent."""
        self._should_reconnect = False
        self._cancel_reconnect()

        if self._ws is not None and not self._ws.closed:
            logger.info(f"[{self._name}] Closing connection")
            await self._ws.close()

        task = self._run_task
        if task is not None and not task.done():
            if self._ws is None:
                # Still in the handshake
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._run_task = None

        await self._stop_housekeeping()
        if self._state in (ConnectionState.CONNECTING, ConnectionState.AWAITING_RECONNECT):
            self._set_state(ConnectionState.DISCONNECTED)

        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    async def send(self, method: str, message: Any) -> bool:
        """
        Send a control command. Dropped unless connected (no queuing).

        Returns:
            True if the command was written to the socket.
        """
        if not self.is_connected or self._ws is None or self._ws.closed:
            logger.debug(f"[{self._name}] Not connected, dropping command {method!r}")
            return False

        await self._ws.send_str(orjson.dumps({"method": method, "message": message}).decode())
        return True

    # --- Connection task ---

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.connect_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _run(self) -> None:
        """Open the socket and pump frames until it closes."""
        try:
            session = await self._get_session()
            logger.info(f"[{self._name}] Connecting to {self.url}")
            ws = await session.ws_connect(self.url, heartbeat=self._config.heartbeat_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A failed handshake reports an error, then a close
            self._handle_error(
                ConnectionError(
                    f"Failed to connect: {e}", url=self.url, component="ConnectionManager"
                )
            )
            self._handle_close()
            return

        self._ws = ws
        self._handle_open()

        error: Optional[BaseException] = None
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ws.exception() or ConnectionError(
                        "WebSocket error", url=self.url, component="ConnectionManager"
                    )
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self._name}] Receive loop error: {e}")
            error = e
        finally:
            self._ws = None
            if not ws.closed:
                await ws.close()

        if error is not None:
            self._handle_error(error)
        self._handle_close()

    # --- Transport event handlers ---

    def _handle_open(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        self._connected_at = datetime.now(timezone.utc)
        self._metrics.connected_at = time.monotonic()
        logger.info(f"[{self._name}] Connected to {self.url}")

        self._hub.emit(Notification.CONNECTED)
        self._hub.emit(Notification.PRICE, "???", "neutral")

        # Once a session has been established, retry from the warm base
        self._reconnect_delay_s = self._config.warm_reconnect_delay_s

        self._start_housekeeping()

    def _handle_message(self, data: Union[str, bytes]) -> None:
        self._last_message_at = datetime.now(timezone.utc)
        self._metrics.last_message_at = time.monotonic()
        self._metrics.messages_received += 1
        self._metrics.bytes_received += len(data)

        try:
            payload = self._decode(data)
        except MessageParseError as e:
            self._metrics.parse_errors += 1
            logger.warning(f"[{self._name}] Dropping frame: {e}")
            return

        try:
            self._on_message(payload)
        except Exception as e:
            self._metrics.errors += 1
            logger.error(f"[{self._name}] Message handling error: {e}", exc_info=True)

    @staticmethod
    def _decode(data: Union[str, bytes]) -> Any:
        if not data or not data.strip():
            raise MessageParseError("Empty frame", component="ConnectionManager")
        try:
            payload = orjson.loads(data)
        except orjson.JSONDecodeError as e:
            raise MessageParseError(
                f"Unable to read socket message: {e}",
                raw_data=data if isinstance(data, str) else None,
                expected_type="json",
                component="ConnectionManager",
            ) from e
        if payload is None:
            raise MessageParseError("Null frame", component="ConnectionManager")
        return payload

    def _handle_close(self) -> None:
        was_connected = self._state == ConnectionState.CONNECTED
        self._set_state(ConnectionState.DISCONNECTED)

        if was_connected:
            self._metrics.reconnections += 1
            logger.warning(f"[{self._name}] Connection lost")
            self._hub.emit(
                Notification.ALERT,
                Alert(id="server_status", type=AlertType.ERROR, message="Connection lost"),
            )
            self._hub.emit(Notification.DISCONNECTED)
            self._cancel_housekeeping()

        self.reconnect()

    def _handle_error(self, error: BaseException) -> None:
        self._metrics.errors += 1
        self._last_error = str(error)
        logger.error(f"[{self._name}] Connection error: {error}")

        self._hub.emit(
            Notification.ALERT,
            Alert(id="server_status", type=AlertType.ERROR, message="Couldn't reach the server"),
        )
        self._hub.emit(Notification.ERROR, error)

        self.reconnect()

    # --- Timers ---

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _start_housekeeping(self) -> None:
        if self._housekeeping is None:
            return
        self._cancel_housekeeping()
        self._housekeeping_task = asyncio.get_running_loop().create_task(
            self._housekeeping_loop(self._housekeeping), name=f"{self._name}_housekeeping"
        )

    async def _housekeeping_loop(self, housekeeping: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(self._housekeeping_interval_s)
            try:
                housekeeping()
            except Exception as e:
                logger.warning(f"[{self._name}] Housekeeping failed: {e}")

    def _cancel_housekeeping(self) -> None:
        if self._housekeeping_task is not None and not self._housekeeping_task.done():
            self._housekeeping_task.cancel()
        self._housekeeping_task = None

    async def _stop_housekeeping(self) -> None:
        task = self._housekeeping_task
        self._cancel_housekeeping()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_health(self) -> ConnectionHealth:
        """Get current connection health snapshot."""
        return ConnectionHealth(
            state=self._state,
            url=self.url,
            connected_since=self._connected_at if self.is_connected else None,
            last_message_at=self._last_message_at,
            reconnect_count=self._metrics.reconnections,
            message_count=self._metrics.messages_received,
            error_count=self._metrics.errors,
            parse_errors=self._metrics.parse_errors,
            last_error=self._last_error,
            reconnect_delay_s=self._reconnect_delay_s,
        )
