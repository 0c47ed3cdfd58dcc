"""
Unit tests for HistoryFetcher.
"""

import asyncio
from typing import Any, AsyncIterator, Callable, Optional, Union

import aiohttp
import orjson
import pytest

from tradefeed.live.buffer import TradeBuffer
from tradefeed.live.clock import ClockSkewCompensator, SimClock
from tradefeed.live.config import HistoryConfig
from tradefeed.live.errors import HistoryFetchError
from tradefeed.live.events import Notification, NotificationHub
from tradefeed.live.history import MINUTE_MS, HistoryFetcher
from tradefeed.live.types import AlertType, FetchProgress, Trade

NOW = 1_700_000_000_000

Emitted = Callable[[Notification], list[tuple[Any, ...]]]


class FakeContent:
    def __init__(self, body: bytes) -> None:
        self._body = body

    async def iter_chunked(self, size: int) -> AsyncIterator[bytes]:
        for start in range(0, len(self._body), size):
            yield self._body[start : start + size]


class FakeResponse:
    """Async context manager mimicking aiohttp.ClientResponse."""

    def __init__(
        self,
        body: bytes = b"[]",
        status: int = 200,
        reason: str = "OK",
        content_length: Optional[int] = -1,
        gate: Optional[asyncio.Event] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.status = status
        self.headers = headers or {}
        self.reason = reason
        self.content = FakeContent(body)
        self.content_length = len(body) if content_length == -1 else content_length
        self._gate = gate

    async def __aenter__(self) -> "FakeResponse":
        if self._gate is not None:
            await self._gate.wait()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeSession:
    """Serves queued responses in request order."""

    def __init__(self, *responses: Union[FakeResponse, Exception]) -> None:
        self._responses = list(responses)
        self.requested: list[str] = []
        self.closed = False

    def get(self, url: str) -> FakeResponse:
        self.requested.append(url)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def rows(*timestamps: int, exchange: str = "binance") -> bytes:
    return orjson.dumps([[exchange, ts, 100.0, 1.0, 1] for ts in timestamps])


def trades(*timestamps: int) -> list[Trade]:
    return [Trade("live", ts, 1.0, 1.0) for ts in timestamps]


@pytest.fixture
def compensator() -> ClockSkewCompensator:
    return ClockSkewCompensator(clock=SimClock(NOW))


@pytest.fixture
def buffer(hub: NotificationHub) -> TradeBuffer:
    return TradeBuffer(hub=hub)


def make_fetcher(
    session: FakeSession,
    hub: NotificationHub,
    buffer: TradeBuffer,
    compensator: ClockSkewCompensator,
    chunk_size: int = 64 * 1024,
) -> HistoryFetcher:
    return HistoryFetcher(
        config=HistoryConfig(chunk_size=chunk_size),
        http_base="http://feed.test/",
        hub=hub,
        buffer=buffer,
        compensator=compensator,
        session=session,  # type: ignore[arg-type]
    )


class TestRequests:
    """Tests for URL construction and request deduplication."""

    @pytest.mark.asyncio
    async def test_absolute_range(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        session = FakeSession(FakeResponse(rows(1000, 2000)))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        result = await fetcher.fetch(1000, 2000)

        assert session.requested == ["http://feed.test/history/1000/2000"]
        assert result is not None
        assert [t.timestamp for t in result] == [1000, 2000]

    @pytest.mark.asyncio
    async def test_fractional_bounds_truncated(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        fetcher = make_fetcher(FakeSession(), hub, buffer, compensator)

        assert fetcher.build_url(1000.7, 2000.2) == "http://feed.test/history/1000/2000"

    @pytest.mark.asyncio
    async def test_relative_window_replaces(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        buffer.append(trades(1, 2, 3))
        session = FakeSession(FakeResponse(rows(NOW - 60_000, NOW - 1000)))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        await fetcher.fetch(15)

        assert session.requested == [f"http://feed.test/history/{NOW - 15 * MINUTE_MS}/{NOW}"]
        assert [t.timestamp for t in buffer] == [NOW - 60_000, NOW - 1000]
        assert emitted(Notification.HISTORY) == [(True,)]

    @pytest.mark.asyncio
    async def test_duplicate_request_suppressed(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        session = FakeSession(FakeResponse(rows(1000)), FakeResponse(rows(1000)))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        assert await fetcher.fetch(0, 5000) is not None
        assert await fetcher.fetch(0, 5000) is None

        assert len(session.requested) == 1
        assert fetcher.stats.deduplicated == 1

    @pytest.mark.asyncio
    async def test_only_last_url_remembered(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        session = FakeSession(
            FakeResponse(rows()), FakeResponse(rows()), FakeResponse(rows())
        )
        fetcher = make_fetcher(session, hub, buffer, compensator)

        await fetcher.fetch(0, 1000)
        await fetcher.fetch(1000, 2000)
        await fetcher.fetch(0, 1000)

        assert len(session.requested) == 3


class TestMerge:
    """Tests for merging results into the buffer."""

    @pytest.mark.asyncio
    async def test_prepend_and_append_around_live_span(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        buffer.append(trades(100, 200, 300))
        session = FakeSession(FakeResponse(rows(50, 150, 250, 350)))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        await fetcher.fetch(0, 400)

        assert [t.timestamp for t in buffer] == [50, 100, 200, 300, 350]
        assert emitted(Notification.HISTORY) == [(False,)]

    @pytest.mark.asyncio
    async def test_unsorted_payload_sorted(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        session = FakeSession(FakeResponse(rows(300, 100, 200)))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        await fetcher.fetch(0, 400)

        assert [t.timestamp for t in buffer] == [100, 200, 300]

    @pytest.mark.asyncio
    async def test_no_history_notification_without_change(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        buffer.append(trades(100, 200, 300))
        session = FakeSession(FakeResponse(rows(150, 250)))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        result = await fetcher.fetch(0, 400)

        assert result is not None and len(result) == 2
        assert [t.timestamp for t in buffer] == [100, 200, 300]
        assert emitted(Notification.HISTORY) == []

    @pytest.mark.asyncio
    async def test_clock_correction_applied(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        compensator.compute_offset(NOW + 5000)
        session = FakeSession(FakeResponse(rows(NOW + 5000)))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        result = await fetcher.fetch(0, NOW + 10_000)

        assert result is not None
        assert result[0].timestamp == NOW
        assert buffer.head_ts == NOW

    @pytest.mark.asyncio
    async def test_superseded_response_not_merged(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        gate = asyncio.Event()
        session = FakeSession(
            FakeResponse(rows(10, 20), gate=gate),
            FakeResponse(rows(1000, 2000)),
        )
        fetcher = make_fetcher(session, hub, buffer, compensator)

        slow = asyncio.create_task(fetcher.fetch(0, 100, replace=True))
        await asyncio.sleep(0)
        await fetcher.fetch(500, 3000, replace=True)

        gate.set()
        stale = await slow

        assert stale is not None and [t.timestamp for t in stale] == [10, 20]
        assert [t.timestamp for t in buffer] == [1000, 2000]
        assert fetcher.stats.superseded == 1
        assert emitted(Notification.HISTORY) == [(True,)]


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_per_chunk(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        body = rows(1, 2, 3, 4)
        session = FakeSession(FakeResponse(body))
        fetcher = make_fetcher(session, hub, buffer, compensator, chunk_size=16)

        await fetcher.fetch(0, 10)

        updates = [args[0] for args in emitted(Notification.FETCH_PROGRESS)]
        assert len(updates) == -(-len(body) // 16)
        assert [u.loaded for u in updates] == sorted(u.loaded for u in updates)
        assert updates[-1] == FetchProgress(loaded=len(body), total=len(body))
        assert updates[-1].progress == 1.0

    @pytest.mark.asyncio
    async def test_unknown_length(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        session = FakeSession(FakeResponse(rows(1), content_length=None))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        await fetcher.fetch(0, 10)

        (update,) = emitted(Notification.FETCH_PROGRESS)[-1]
        assert update.total is None
        assert update.progress is None


    @pytest.mark.asyncio
    async def test_compressed_body_has_unknown_total(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        """Decoded chunks outgrow a gzip Content-Length, so no fraction is reported."""
        body = rows(*range(100))
        session = FakeSession(
            FakeResponse(body, content_length=len(body) // 10, headers={"Content-Encoding": "gzip"})
        )
        fetcher = make_fetcher(session, hub, buffer, compensator, chunk_size=256)

        await fetcher.fetch(0, 1000)

        updates = [args[0] for args in emitted(Notification.FETCH_PROGRESS)]
        assert updates[-1].loaded == len(body)
        assert all(u.total is None and u.progress is None for u in updates)


class TestFailures:
    """Tests for error reporting and retry."""

    @pytest.mark.asyncio
    async def test_cancelled_range_can_be_retried(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        gate = asyncio.Event()
        session = FakeSession(FakeResponse(rows(10), gate=gate), FakeResponse(rows(500)))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(fetcher.fetch(0, 1000), timeout=0.01)
        assert fetcher.last_url is None

        result = await fetcher.fetch(0, 1000)

        assert result is not None and [t.timestamp for t in result] == [500]
        assert len(session.requested) == 2
        assert [t.timestamp for t in buffer] == [500]
        assert emitted(Notification.ALERT) == []

    @pytest.mark.asyncio
    async def test_http_error(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        session = FakeSession(FakeResponse(b"", status=500, reason="Internal Server Error"))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        with pytest.raises(HistoryFetchError) as exc:
            await fetcher.fetch(0, 1000)

        assert exc.value.status == 500
        (alert,) = emitted(Notification.ALERT)[0]
        assert alert.id == "fetch_error"
        assert alert.type == AlertType.ERROR
        assert alert.title == "Unable to retrieve history"
        assert alert.message == "HTTP 500 Internal Server Error"
        assert emitted(Notification.HISTORY) == []
        assert fetcher.stats.failures == 1

    @pytest.mark.asyncio
    async def test_failed_range_can_be_retried(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        session = FakeSession(
            FakeResponse(b"", status=503, reason="Service Unavailable"),
            FakeResponse(rows(500)),
        )
        fetcher = make_fetcher(session, hub, buffer, compensator)

        with pytest.raises(HistoryFetchError):
            await fetcher.fetch(0, 1000)
        result = await fetcher.fetch(0, 1000)

        assert result is not None
        assert len(session.requested) == 2

    @pytest.mark.asyncio
    async def test_network_error_wrapped(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        emitted: Emitted,
    ) -> None:
        session = FakeSession(aiohttp.ClientConnectionError("connection refused"))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        with pytest.raises(HistoryFetchError) as exc:
            await fetcher.fetch(0, 1000)

        assert isinstance(exc.value.__cause__, aiohttp.ClientConnectionError)
        assert emitted(Notification.ALERT)[0][0].message == "connection refused"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b'{"trades": []}', b"[[1]]", b"not json"])
    async def test_invalid_payload(
        self,
        hub: NotificationHub,
        buffer: TradeBuffer,
        compensator: ClockSkewCompensator,
        body: bytes,
    ) -> None:
        session = FakeSession(FakeResponse(body))
        fetcher = make_fetcher(session, hub, buffer, compensator)

        with pytest.raises(HistoryFetchError):
            await fetcher.fetch(0, 1000)
        assert len(buffer) == 0

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_range(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        fetcher = make_fetcher(FakeSession(FakeResponse(b"")), hub, buffer, compensator)

        assert await fetcher.fetch(0, 1000) == []

    @pytest.mark.asyncio
    async def test_close_leaves_caller_session(
        self, hub: NotificationHub, buffer: TradeBuffer, compensator: ClockSkewCompensator
    ) -> None:
        session = FakeSession()
        fetcher = make_fetcher(session, hub, buffer, compensator)

        await fetcher.close()

        assert session.closed is False
