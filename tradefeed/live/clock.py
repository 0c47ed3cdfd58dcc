"""
Local time sources and clock-skew compensation.

now() provides the local notion of time for the feed. It is used by
 - ClockSkewCompensator, to measure server drift on each welcome handshake
 - HistoryFetcher, to resolve relative "last N minutes" windows
 - TradeFeed housekeeping, to compute the trim cutoff
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from tradefeed.live.types import Millis, Trade

logger = logging.getLogger(__name__)


class ClockError(RuntimeError):
    """Raised when a clock operation would violate its invariants (e.g., going backward)."""


# -------- Clocks ---------------------------------------------------------------


class Clock(ABC):
    """
    Local time source. All timestamps are UTC epoch milliseconds (int).
    """

    @abstractmethod
    def now(self) -> Millis:
        """Current time in UTC epoch milliseconds."""
        raise NotImplementedError


class RealtimeClock(Clock):
    """
    Wall-clock time source.

    It anchors to the wall-clock at construction and then advances using
    time.monotonic(), so `now()` never jumps backward if the OS clock is
    adjusted while the feed is running.
    """

    def __init__(self) -> None:
        self._t0_wall_ms: Millis = int(time.time() * 1000)
        self._t0_mono = time.monotonic()

    def now(self) -> Millis:
        elapsed_ms = int((time.monotonic() - self._t0_mono) * 1000)
        return self._t0_wall_ms + elapsed_ms


class SimClock(Clock):
    """
    Deterministic, manually-advanced clock. All advances must be forward.
    """

    def __init__(self, start_ms: Millis) -> None:
        if start_ms < 0:
            raise ValueError("start_ms must be >= 0")
        self._current_ms: Millis = int(start_ms)

    def now(self) -> Millis:
        return self._current_ms

    def advance_to(self, ts_ms: Millis) -> Millis:
        if ts_ms < self._current_ms:
            raise ClockError(f"SimClock: cannot go backwards: {ts_ms} < {self._current_ms}")
        self._current_ms = int(ts_ms)
        return self._current_ms

    def advance_by(self, delta_ms: Millis) -> Millis:
        if delta_ms < 0:
            raise ClockError(f"SimClock: cannot go backwards, delta_ms < 0: {delta_ms}")
        return self.advance_to(self._current_ms + int(delta_ms))


# -------- Skew compensation ----------------------------------------------------


class ClockSkewCompensator:
    """
    Shifts accepted timestamps into the local time domain.

    The offset is measured once per handshake (server timestamp minus local
    now) and stays fixed until the next handshake. Compensation only kicks in
    when the drift exceeds the threshold.
    """

    def __init__(self, clock: Optional[Clock] = None, threshold_ms: int = 2000) -> None:
        self._clock = clock or RealtimeClock()
        self._threshold_ms = threshold_ms
        self._offset: Millis = 0
        self._delayed = False

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def offset(self) -> Millis:
        """Server time minus local time, as of the last handshake."""
        return self._offset

    @property
    def delayed(self) -> bool:
        """True when the offset is large enough to be compensated."""
        return self._delayed

    def compute_offset(self, server_ts: Optional[Millis]) -> Millis:
        """Measure the offset against a server-reported timestamp."""
        self._offset = int(server_ts) - self._clock.now() if server_ts else 0
        self._delayed = abs(self._offset) > self._threshold_ms

        if self._delayed:
            logger.warning(
                f"Server clock differs from local clock by {self._offset}ms, "
                f"compensating timestamps"
            )
        else:
            logger.debug(f"Clock offset {self._offset}ms within threshold")
        return self._offset

    def correct(self, trades: Iterable[Trade]) -> list[Trade]:
        if not self._delayed:
            return list(trades)
        return [t.shifted(-self._offset) for t in trades]

    def reset(self) -> None:
        self._offset = 0
        self._delayed = False
