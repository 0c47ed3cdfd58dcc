"""Ordered trade buffer shared by the live feed and historical backfills."""

from __future__ import annotations

import bisect
import logging
from typing import Iterable, Iterator, Optional

from tradefeed.live.events import Notification, NotificationHub
from tradefeed.live.types import Millis, Trade

logger = logging.getLogger(__name__)


class TradeBuffer:
    """
    Ordered sequence of accepted trades, non-decreasing by timestamp.

    Callers pass batches that are already sorted and clock-corrected. The
    buffer does not re-check them against its current tail.

    Not thread-safe: all mutation happens on the event loop thread.
    """

    def __init__(self, hub: Optional[NotificationHub] = None) -> None:
        """
        Args:
            hub: Optional hub receiving `trim` notifications.
        """
        self._hub = hub
        self._trades: list[Trade] = []

    def __len__(self) -> int:
        return len(self._trades)

    def __iter__(self) -> Iterator[Trade]:
        return iter(self._trades)

    def __getitem__(self, index: int) -> Trade:
        return self._trades[index]

    @property
    def head_ts(self) -> Optional[Millis]:
        """Timestamp of the oldest trade, None when empty."""
        return self._trades[0].timestamp if self._trades else None

    @property
    def tail_ts(self) -> Optional[Millis]:
        """Timestamp of the newest trade, None when empty."""
        return self._trades[-1].timestamp if self._trades else None

    def snapshot(self) -> list[Trade]:
        """Copy of the buffer, oldest first."""
        return list(self._trades)

    def append(self, batch: Iterable[Trade]) -> None:
        """Concatenate a sorted, clock-corrected batch to the tail."""
        self._trades.extend(batch)

    def replace(self, batch: Iterable[Trade]) -> None:
        """Make a sorted, clock-corrected batch the whole buffer."""
        self._trades = list(batch)

    def merge_historical(self, batch: Iterable[Trade], replace: bool = False) -> bool:
        """
        Merge a sorted, clock-corrected historical range.

        Trades at or before the current head are prepended, trades at or after
        the current tail are appended, and trades strictly inside the span are
        dropped as already covered by the live feed.

        Args:
            batch: Historical trades, ascending by timestamp.
            replace: Replace the buffer instead of merging.

        Returns:
            True if the buffer length changed.
        """
        batch = list(batch)
        count = len(self._trades)

        if replace or not self._trades:
            self._trades = batch
            return len(self._trades) != count

        head_ts = self._trades[0].timestamp
        tail_ts = self._trades[-1].timestamp

        prepend = [t for t in batch if t.timestamp <= head_ts]
        append = [t for t in batch if t.timestamp >= tail_ts]

        if prepend:
            self._trades = prepend + self._trades
        if append:
            self._trades.extend(append)

        logger.debug(
            f"Merged history: {len(prepend)} prepended, {len(append)} appended, "
            f"{len(batch) - len(prepend) - len(append)} interior dropped"
        )
        return len(self._trades) != count

    def trim(self, cutoff_ts: Millis) -> int:
        """
        Remove the maximal prefix of trades older than cutoff_ts.

        Emits `trim` when at least one trade was removed.

        Returns:
            Number of trades removed.
        """
        index = bisect.bisect_left(self._trades, cutoff_ts, key=lambda t: t.timestamp)
        if index == 0:
            return 0

        del self._trades[:index]
        logger.debug(f"Trimmed {index} trades older than {cutoff_ts}")

        if self._hub is not None:
            self._hub.emit(Notification.TRIM, cutoff_ts)
        return index

    def get_recent(self, n: int = 100) -> list[Trade]:
        """The N most recent trades, most recent first."""
        if n <= 0:
            return []
        recent = self._trades[-n:]
        recent.reverse()
        return recent

    def get_trades_since(self, timestamp_ms: Millis) -> list[Trade]:
        """Trades with timestamp > timestamp_ms (exclusive), oldest first."""
        index = bisect.bisect_right(self._trades, timestamp_ms, key=lambda t: t.timestamp)
        return self._trades[index:]

    def clear(self) -> None:
        """Drop every trade."""
        self._trades = []
