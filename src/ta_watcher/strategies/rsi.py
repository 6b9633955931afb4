"""Relative Strength Index strategy: BUY when oversold, SELL when overbought."""

from __future__ import annotations

from collections.abc import Sequence

from ta_watcher.strategy import MarketData, Signal, SignalResult, Strategy, Strength


def rsi(closes: Sequence[float], period: int = 14) -> list[float]:
    """Wilder's RSI for every bar from index *period* onward.

    Returns a list of ``len(closes) - period`` values.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    if len(closes) <= period:
        raise ValueError(f"need more than {period} closes, got {len(closes)}")

    gains = losses = 0.0
    for prev, cur in zip(closes[:period], closes[1 : period + 1]):
        change = cur - prev
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain, avg_loss = gains / period, losses / period

    values = [_rsi_value(avg_gain, avg_loss)]
    for prev, cur in zip(closes[period:], closes[period + 1 :]):
        change = cur - prev
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period
        values.append(_rsi_value(avg_gain, avg_loss))
    return values


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)


class RSIStrategy(Strategy):
    """Classic RSI thresholds.

    Readings at or below *oversold* produce BUY, at or above *overbought*
    produce SELL. Readings ten points past a threshold are STRONG.
    """

    name = "rsi"
    description = "RSI oversold/overbought"

    def __init__(self, period: int = 14, oversold: float = 30.0, overbought: float = 70.0) -> None:
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        if not 0 < oversold < overbought < 100:
            raise ValueError(f"need 0 < oversold ({oversold}) < overbought ({overbought}) < 100")
        self.period = period
        self.oversold = oversold
        self.overbought = overbought

    def required_data_points(self) -> int:
        return self.period + 1

    def evaluate(self, data: MarketData) -> SignalResult | None:
        closes = data.closes()
        if len(closes) < self.required_data_points():
            raise ValueError(
                f"{self.name}: need {self.required_data_points()} bars, got {len(closes)}"
            )
        value = rsi(closes, self.period)[-1]
        indicators = {"rsi": round(value, 2)}
        thresholds = {"oversold": self.oversold, "overbought": self.overbought}

        if value <= self.oversold:
            signal = Signal.BUY
            strength = Strength.STRONG if value <= self.oversold - 10 else Strength.NORMAL
            message = f"RSI {value:.2f} is oversold (<= {self.oversold:g})"
        elif value >= self.overbought:
            signal = Signal.SELL
            strength = Strength.STRONG if value >= self.overbought + 10 else Strength.NORMAL
            message = f"RSI {value:.2f} is overbought (>= {self.overbought:g})"
        else:
            signal = Signal.HOLD
            strength = Strength.WEAK
            message = f"RSI {value:.2f} is neutral"

        return SignalResult(
            signal=signal,
            strength=strength,
            message=message,
            indicators=indicators,
            thresholds=thresholds,
            metadata={"period": self.period, "price": closes[-1]},
        )
