"""Shared fixtures for live feed tests."""

from typing import Any, Callable

import pytest

from tradefeed.live.events import Notification, NotificationHub

Recorded = list[tuple[Notification, tuple[Any, ...]]]


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub(name="test_hub")


@pytest.fixture
def recorded(hub: NotificationHub) -> Recorded:
    """Every notification emitted on `hub`, in order."""
    events: Recorded = []
    for notification in Notification:
        hub.subscribe(
            notification,
            lambda *args, _n=notification: events.append((_n, args)),
        )
    return events


@pytest.fixture
def emitted(recorded: Recorded) -> Callable[[Notification], list[tuple[Any, ...]]]:
    """Argument tuples of every emission of one notification."""

    def select(notification: Notification) -> list[tuple[Any, ...]]:
        return [args for name, args in recorded if name == notification]

    return select
