"""
Historical backfill for the trade buffer.

Fetches `GET {http_base}/history/{from_ms}/{to_ms}` and merges the returned
range into the TradeBuffer around the live feed's current span.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Optional

import aiohttp
import orjson

from tradefeed.live.buffer import TradeBuffer
from tradefeed.live.clock import ClockSkewCompensator
from tradefeed.live.config import HistoryConfig
from tradefeed.live.errors import HistoryFetchError, MessageParseError
from tradefeed.live.events import Notification, NotificationHub
from tradefeed.live.types import Alert, AlertType, FetchProgress, HistoryStats, Trade

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000


class HistoryFetcher:
    """
    Issues backfill requests and merges the results into the TradeBuffer.

    Two call modes:
        fetch(from_ms, to_ms, replace)  absolute range, merged unless replace
        fetch(minutes)                  last N minutes, always replaces the buffer

    A request whose URL equals the last issued one resolves to None without
    touching the network. Requests are numbered; a response that arrives after
    a later-issued request has already been applied is returned to its caller
    but not merged.
    """

    def __init__(
        self,
        config: HistoryConfig,
        http_base: str,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        session: Optional[aiohttp.ClientSession] = None,
        name: str = "history",
    ) -> None:
        self._config = config
        self._http_base = http_base.rstrip("/")
        self._hub = hub
        self._buffer = buffer
        self._compensator = compensator
        self._name = name

        self._session = session
        self._owns_session = session is None

        self._last_url: Optional[str] = None
        self._seq = itertools.count(1)
        self._last_applied_seq = 0
        self._stats = HistoryStats()

    @property
    def stats(self) -> HistoryStats:
        return self._stats

    @property
    def last_url(self) -> Optional[str]:
        return self._last_url

    def build_url(self, from_ms: float, to_ms: float) -> str:
        return f"{self._http_base}/history/{int(from_ms)}/{int(to_ms)}"

    async def fetch(
        self,
        from_: float,
        to: Optional[float] = None,
        replace: bool = False,
    ) -> Optional[list[Trade]]:
        """
        Fetch a range of historical trades and merge it into the buffer.

        Args:
            from_: Range start in ms, or a number of minutes when `to` is None
            to: Range end in ms; None means "now" (relative mode)
            replace: Replace the buffer instead of merging

        Returns:
            The clock-corrected trades, or None for a duplicate request.

        Raises:
            HistoryFetchError: If the request or its payload fails
        """
        if to is None:
            to = self._compensator.clock.now()
            from_ = to - from_ * MINUTE_MS
            replace = True

        url = self.build_url(from_, to)
        if url == self._last_url:
            self._stats.deduplicated += 1
            logger.debug(f"[{self._name}] Skipping duplicate request {url}")
            return None

        self._last_url = url
        seq = next(self._seq)
        self._stats.requests += 1
        logger.info(f"[{self._name}] Fetching history #{seq}: {url}")

        try:
            body = await self._download(url)
            trades = self._decode(body, url)
        except HistoryFetchError as e:
            self._fail(url, e)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = HistoryFetchError(
                str(e) or type(e).__name__, url=url, component="HistoryFetcher"
            )
            self._fail(url, error)
            raise error from e
        except BaseException:
            # Cancelled or unexpected failure: nothing was applied, allow a retry
            self._forget(url)
            raise

        trades = self._compensator.correct(sorted(trades, key=lambda t: t.timestamp))
        self._stats.trades_received += len(trades)

        if seq < self._last_applied_seq:
            self._stats.superseded += 1
            logger.info(
                f"[{self._name}] Discarding history #{seq}: superseded by #{self._last_applied_seq}"
            )
            return trades
        self._last_applied_seq = seq

        if self._buffer.merge_historical(trades, replace=replace):
            self._hub.emit(Notification.HISTORY, replace)

        logger.debug(
            f"[{self._name}] History #{seq}: {len(trades)} trades, buffer={len(self._buffer)}"
        )
        return trades

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _download(self, url: str) -> bytes:
        session = await self._get_session()
        async with session.get(url) as response:
            if response.status >= 400:
                raise HistoryFetchError(
                    f"HTTP {response.status} {response.reason or ''}".strip(),
                    url=url,
                    status=response.status,
                    component="HistoryFetcher",
                )

            # Content-Length counts encoded bytes; chunks arrive decompressed
            encoding = response.headers.get(aiohttp.hdrs.CONTENT_ENCODING, "identity")
            total = response.content_length if encoding.lower() == "identity" else None
            loaded = 0
            chunks: list[bytes] = []
            async for chunk in response.content.iter_chunked(self._config.chunk_size):
                chunks.append(chunk)
                loaded += len(chunk)
                self._hub.emit(Notification.FETCH_PROGRESS, FetchProgress(loaded, total))

        return b"".join(chunks)

    @staticmethod
    def _decode(body: bytes, url: str) -> list[Trade]:
        try:
            rows: Any = orjson.loads(body) if body.strip() else []
            if not isinstance(rows, list):
                raise MessageParseError(
                    "History payload must be a list of trades", expected_type="list"
                )
            return [Trade.from_wire(row) for row in rows]
        except (orjson.JSONDecodeError, MessageParseError) as e:
            raise HistoryFetchError(
                f"Invalid history payload: {e}", url=url, component="HistoryFetcher"
            ) from e

    def _forget(self, url: str) -> None:
        if self._last_url == url:
            self._last_url = None

    def _fail(self, url: str, error: HistoryFetchError) -> None:
        self._stats.failures += 1
        # Let the caller retry the same range
        self._forget(url)

        logger.error(f"[{self._name}] Unable to retrieve history: {error}")
        self._hub.emit(
            Notification.ALERT,
            Alert(
                id="fetch_error",
                type=AlertType.ERROR,
                title="Unable to retrieve history",
                message=error.args[0] if error.args else str(error),
            ),
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
