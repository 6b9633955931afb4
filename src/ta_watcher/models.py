"""Data models for klines and timeframes."""

from __future__ import annotations

import datetime
import functools
from dataclasses import dataclass
from enum import Enum

from ta_watcher.errors import UnsupportedTimeframeError

_MINUTE = datetime.timedelta(minutes=1)
_HOUR = datetime.timedelta(hours=1)
_DAY = datetime.timedelta(days=1)


@functools.total_ordering
class Timeframe(Enum):
    """Bar granularity, ordered by duration."""

    M1 = "1m"
    M3 = "3m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H2 = "2h"
    H4 = "4h"
    H6 = "6h"
    H8 = "8h"
    H12 = "12h"
    D1 = "1d"
    D3 = "3d"
    W1 = "1w"
    MO1 = "1M"

    @property
    def duration(self) -> datetime.timedelta:
        """Nominal bar length. A month is counted as 30 days."""
        return _DURATIONS[self]

    @classmethod
    def parse(cls, value: str | Timeframe) -> Timeframe:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedTimeframeError(f"unsupported timeframe: {value!r}") from None

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Timeframe):
            return NotImplemented
        return self.duration < other.duration

    def __str__(self) -> str:
        return self.value


_DURATIONS: dict[Timeframe, datetime.timedelta] = {
    Timeframe.M1: _MINUTE,
    Timeframe.M3: 3 * _MINUTE,
    Timeframe.M5: 5 * _MINUTE,
    Timeframe.M15: 15 * _MINUTE,
    Timeframe.M30: 30 * _MINUTE,
    Timeframe.H1: _HOUR,
    Timeframe.H2: 2 * _HOUR,
    Timeframe.H4: 4 * _HOUR,
    Timeframe.H6: 6 * _HOUR,
    Timeframe.H8: 8 * _HOUR,
    Timeframe.H12: 12 * _HOUR,
    Timeframe.D1: _DAY,
    Timeframe.D3: 3 * _DAY,
    Timeframe.W1: 7 * _DAY,
    Timeframe.MO1: 30 * _DAY,
}


def utc_from_millis(ms: int | float | str) -> datetime.datetime:
    """Convert a Unix timestamp in milliseconds to an aware UTC datetime."""
    return datetime.datetime.fromtimestamp(int(ms) / 1000, tz=datetime.timezone.utc)


def to_millis(ts: datetime.datetime) -> int:
    return int(ts.timestamp() * 1000)


@dataclass(slots=True, frozen=True)
class Kline:
    """A single OHLCV bar.

    Attributes:
        symbol:     Exchange-neutral symbol, e.g. ``BTCUSDT``.
        open_time:  Bar open, timezone-aware UTC.
        close_time: Bar close, timezone-aware UTC. Always after ``open_time``.
        open:       Opening price.
        high:       Highest price during the bar.
        low:        Lowest price during the bar.
        close:      Closing price.
        volume:     Traded base volume (0 for derived cross rates).
    """

    symbol: str
    open_time: datetime.datetime
    close_time: datetime.datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def __post_init__(self) -> None:
        if self.open_time.tzinfo is None or self.close_time.tzinfo is None:
            raise ValueError("kline timestamps must be timezone-aware")
        if self.open_time >= self.close_time:
            raise ValueError(
                f"open_time ({self.open_time}) must be before close_time ({self.close_time})"
            )
        if min(self.open, self.high, self.low, self.close) <= 0:
            raise ValueError(f"prices must be positive for {self.symbol}")
        if self.volume < 0:
            raise ValueError(f"volume must be >= 0, got {self.volume}")
        if self.high < self.low:
            raise ValueError(f"high ({self.high}) must be >= low ({self.low})")
        if self.high < max(self.open, self.close):
            raise ValueError(f"high ({self.high}) must be >= open and close")
        if self.low > min(self.open, self.close):
            raise ValueError(f"low ({self.low}) must be <= open and close")
