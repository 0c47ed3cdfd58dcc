"""
Notification hub for the trade feed.

Replaces a process-wide event emitter with an explicitly owned observer
registry over a closed set of notification names. Payloads per name:

    connected        ()
    disconnected     ()
    error            (exception)
    price            (value, state)
    trades           (list[Trade])
    welcome          (dict)
    admin            ()
    exchanges        (list[str])
    pair             (pair, forced)
    alert            (Alert)
    fetchProgress    (FetchProgress)
    history          (replaced)
    trim             (cutoff_ms)
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)


class Notification(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PRICE = "price"
    TRADES = "trades"
    WELCOME = "welcome"
    ADMIN = "admin"
    EXCHANGES = "exchanges"
    PAIR = "pair"
    ALERT = "alert"
    FETCH_PROGRESS = "fetchProgress"
    HISTORY = "history"
    TRIM = "trim"


Listener = Callable[..., Any]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by NotificationHub.subscribe()."""

    id: int
    name: Notification
    callback: Listener = field(compare=False)


class NotificationHub:
    """
    Observer registry with a closed set of notification names.

    Listeners run synchronously in subscription order. A listener that raises
    is logged and skipped; the remaining listeners still run. When a listener
    returns a coroutine it is scheduled on the running loop.
    """

    def __init__(self, name: str = "hub") -> None:
        self._name = name
        self._listeners: dict[Notification, list[Subscription]] = {n: [] for n in Notification}
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task[Any]] = set()
        self._emit_counts: dict[Notification, int] = {n: 0 for n in Notification}

    @staticmethod
    def _resolve(name: Union[Notification, str]) -> Notification:
        try:
            return Notification(name)
        except ValueError:
            raise ValueError(f"Unknown notification: {name!r}") from None

    def subscribe(self, name: Union[Notification, str], callback: Listener) -> Subscription:
        """Register a listener for a notification name."""
        notification = self._resolve(name)
        sub = Subscription(id=next(self._ids), name=notification, callback=callback)
        self._listeners[notification].append(sub)
        logger.debug(f"[{self._name}] Subscribed #{sub.id} to {notification.value}")
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a listener. Returns False if it was not registered."""
        listeners = self._listeners[subscription.name]
        if subscription in listeners:
            listeners.remove(subscription)
            return True
        return False

    def emit(self, name: Union[Notification, str], *args: Any) -> None:
        """Deliver a notification to every listener of `name`."""
        notification = self._resolve(name)
        self._emit_counts[notification] += 1

        # Copy so listeners may unsubscribe while being notified
        for sub in list(self._listeners[notification]):
            try:
                result = sub.callback(*args)
            except Exception as e:
                logger.error(
                    f"[{self._name}] Listener #{sub.id} for {notification.value} failed: {e}",
                    exc_info=True,
                )
                continue

            if inspect.isawaitable(result):
                self._schedule(result, sub)

    def _schedule(self, awaitable: Any, sub: Subscription) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop; nothing can drive the coroutine
            logger.warning(
                f"[{self._name}] Dropping async listener #{sub.id} for "
                f"{sub.name.value}: no running event loop"
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self._name}] Async listener failed: {task.exception()}")

    def listener_count(self, name: Union[Notification, str]) -> int:
        return len(self._listeners[self._resolve(name)])

    def emit_count(self, name: Union[Notification, str]) -> int:
        return self._emit_counts[self._resolve(name)]

    def clear(self) -> None:
        """Remove every listener."""
        for listeners in self._listeners.values():
            listeners.clear()
