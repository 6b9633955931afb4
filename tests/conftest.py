"""Shared fixtures: kline builders, fake data source, recording notifier, local HTTP server."""

from __future__ import annotations

import asyncio
import datetime
import threading

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from ta_watcher.errors import DataFetchError, NotifierError
from ta_watcher.models import Kline, Timeframe
from ta_watcher.notifiers.base import Notification, Notifier
from ta_watcher.providers.base import DataSource
from ta_watcher.transport import RateLimitedTransport, RateLimitState

UTC = datetime.timezone.utc
DAY = datetime.timedelta(days=1)


def make_kline(
    open_time: datetime.datetime,
    open: float = 100.0,
    close: float = 101.0,
    volume: float = 1000.0,
    symbol: str = "BTCUSDT",
    span: datetime.timedelta = DAY,
) -> Kline:
    return Kline(
        symbol=symbol,
        open_time=open_time,
        close_time=open_time + span - datetime.timedelta(milliseconds=1),
        open=open,
        high=max(open, close) + 1,
        low=min(open, close) - 1,
        close=close,
        volume=volume,
    )


def daily_klines(start: datetime.date, days: int, symbol: str = "BTCUSDT") -> list[Kline]:
    """*days* consecutive daily bars; day i opens at 100+i and closes at 101+i."""
    first = datetime.datetime(start.year, start.month, start.day, tzinfo=UTC)
    return [
        make_kline(first + i * DAY, open=100.0 + i, close=101.0 + i, symbol=symbol)
        for i in range(days)
    ]


def fast_transport(max_retries: int = 0, retry_delay: float = 0.0) -> RateLimitedTransport:
    return RateLimitedTransport(
        RateLimitState(requests_per_minute=600_000, retry_delay=retry_delay, max_retries=max_retries)
    )


class FakeDataSource(DataSource):
    """In-memory data source with per-symbol klines, failures and delays."""

    name = "fake"

    def __init__(
        self,
        klines: dict[str, list[Kline]] | None = None,
        valid: set[str] | None = None,
        failing: set[str] | None = None,
        delay: float = 0.0,
        timeframes: list[Timeframe] | None = None,
    ) -> None:
        super().__init__(fast_transport())
        self.klines = klines or {}
        self.valid = valid if valid is not None else set(self.klines)
        self.failing = failing or set()
        self.delay = delay
        self.timeframes = timeframes
        self.calls: list[tuple[str, Timeframe]] = []
        self.validated: list[str] = []

    def supported_timeframes(self) -> list[Timeframe]:
        return self.timeframes if self.timeframes is not None else list(Timeframe)

    async def is_symbol_valid(self, symbol: str) -> bool:
        self.validated.append(symbol)
        return symbol in self.valid

    async def get_klines(self, symbol, timeframe, start=None, end=None, limit=0):
        self.calls.append((symbol, timeframe))
        if self.delay:
            await asyncio.sleep(self.delay)
        if symbol in self.failing:
            raise DataFetchError(f"{symbol} unavailable")
        data = list(self.klines.get(symbol, []))
        return data[-limit:] if limit > 0 else data


class RecordingNotifier(Notifier):
    """Thread-safe notifier that records every delivery."""

    def __init__(self, name: str, fail: bool = False, enabled: bool = True) -> None:
        self.name = name
        self.fail = fail
        self.enabled = enabled
        self.closed = False
        self.received: list[Notification] = []
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> None:
        if self.fail:
            raise NotifierError(f"{self.name} is down")
        with self._lock:
            self.received.append(notification)

    def is_enabled(self) -> bool:
        return self.enabled

    def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def serve():
    """Start an aiohttp app on a local port; returns its base URL."""
    servers: list[TestServer] = []

    async def _serve(app: web.Application) -> str:
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return str(server.make_url("/")).rstrip("/")

    yield _serve
    for server in servers:
        await server.close()


@pytest.fixture
def may_2024() -> list[Kline]:
    return daily_klines(datetime.date(2024, 5, 1), 31)
