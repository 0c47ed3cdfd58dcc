"""Set of exchanges the server currently reports as connected."""

from __future__ import annotations

from typing import Iterable, Iterator, Optional

from tradefeed.live.events import Notification, NotificationHub


class ExchangeSet:
    """
    Insertion-ordered set of exchange ids.

    Every mutator emits `exchanges` with the current list, including the
    no-op cases.
    """

    def __init__(self, hub: Optional[NotificationHub] = None) -> None:
        self._hub = hub
        self._ids: dict[str, None] = {}

    def __contains__(self, exchange_id: object) -> bool:
        return exchange_id in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def _notify(self) -> None:
        if self._hub is not None:
            self._hub.emit(Notification.EXCHANGES, self.ids)

    def replace(self, exchange_ids: Iterable[str]) -> None:
        self._ids = dict.fromkeys(exchange_ids)
        self._notify()

    def add(self, exchange_id: str) -> bool:
        """Add an id if absent. Returns True if the set changed."""
        added = exchange_id not in self._ids
        if added:
            self._ids[exchange_id] = None
        self._notify()
        return added

    def remove(self, exchange_id: str) -> bool:
        """Remove an id if present. Returns True if the set changed."""
        removed = exchange_id in self._ids
        if removed:
            del self._ids[exchange_id]
        self._notify()
        return removed

    def clear(self) -> None:
        self._ids = {}
        self._notify()
