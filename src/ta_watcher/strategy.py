"""Strategy capability: evaluates market data and produces trading signals."""

from __future__ import annotations

import datetime
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ta_watcher.models import Kline, Timeframe
from ta_watcher.notifiers.base import NotificationLevel


class Signal(Enum):
    NONE = "NONE"
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Strength(Enum):
    WEAK = "WEAK"
    NORMAL = "NORMAL"
    STRONG = "STRONG"


@dataclass(slots=True, frozen=True)
class MarketData:
    """Snapshot handed to :meth:`Strategy.evaluate`.

    Attributes:
        symbol:    Symbol the klines belong to.
        timeframe: Bar granularity of ``klines``.
        klines:    Bars ascending by ``open_time``.
        timestamp: When the snapshot was taken (UTC).
    """

    symbol: str
    timeframe: Timeframe
    klines: Sequence[Kline]
    timestamp: datetime.datetime

    def closes(self) -> list[float]:
        return [k.close for k in self.klines]


@dataclass(slots=True, frozen=True)
class SignalResult:
    """Outcome of one strategy evaluation."""

    signal: Signal
    strength: Strength = Strength.NORMAL
    message: str = ""
    indicators: Mapping[str, float] = field(default_factory=dict)
    thresholds: Mapping[str, float] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def should_notify(self) -> bool:
        return self.signal in (Signal.BUY, Signal.SELL)

    def notification_level(self) -> NotificationLevel:
        if self.strength is Strength.STRONG:
            return NotificationLevel.CRITICAL
        if self.strength is Strength.NORMAL:
            return NotificationLevel.WARNING
        return NotificationLevel.INFO


class Strategy(ABC):
    """Base class every strategy must implement."""

    #: Registry key and display name.
    name: str = ""
    description: str = ""

    @abstractmethod
    def required_data_points(self) -> int:
        """Minimum number of bars :meth:`evaluate` needs."""

    @abstractmethod
    def evaluate(self, data: MarketData) -> SignalResult | None:
        """Evaluate *data* and return a result, or ``None`` when there is nothing to say.

        Raises:
            ValueError: if *data* is unusable (e.g. too few bars).
        """

    def supported_timeframes(self) -> list[Timeframe]:
        return list(Timeframe)


def _create_rsi(params: Mapping[str, Any]) -> Strategy:
    from ta_watcher.strategies.rsi import RSIStrategy  # noqa: PLC0415
    return RSIStrategy(**params)


_STRATEGIES: dict[str, Callable[[Mapping[str, Any]], Strategy]] = {
    "rsi": _create_rsi,
}


def available_strategies() -> list[str]:
    return sorted(_STRATEGIES)


def create_strategy(name: str, params: Mapping[str, Any] | None = None) -> Strategy:
    factory = _STRATEGIES.get(name.strip().lower())
    if factory is None:
        raise ValueError(f"unknown strategy {name!r}; available: {available_strategies()}")
    return factory(params or {})
