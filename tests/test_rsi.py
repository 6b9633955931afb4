import datetime

import pytest
from conftest import DAY, UTC, make_kline

from ta_watcher.models import Timeframe
from ta_watcher.notifiers.base import NotificationLevel
from ta_watcher.strategies.rsi import RSIStrategy, rsi
from ta_watcher.strategy import MarketData, Signal, Strength, available_strategies, create_strategy

T0 = datetime.datetime(2024, 1, 1, tzinfo=UTC)


def _data(closes):
    klines = [make_kline(T0 + i * DAY, open=c, close=c) for i, c in enumerate(closes)]
    return MarketData("BTCUSDT", Timeframe.D1, klines, T0)


def test_rsi_wilder_smoothing():
    values = rsi([1.0, 3.0, 2.0, 4.0], period=2)
    assert values == pytest.approx([200 / 3, 600 / 7])


def test_rsi_flat_series_is_neutral():
    assert rsi([5.0] * 10, period=3) == [50.0] * 7


def test_rsi_needs_more_than_period_closes():
    with pytest.raises(ValueError):
        rsi([1.0, 2.0], period=2)


def test_rising_closes_are_overbought():
    result = RSIStrategy().evaluate(_data([100.0 + i for i in range(20)]))
    assert result.signal is Signal.SELL
    assert result.strength is Strength.STRONG
    assert result.indicators["rsi"] == 100.0
    assert result.notification_level() is NotificationLevel.CRITICAL
    assert result.should_notify()


def test_falling_closes_are_oversold():
    result = RSIStrategy().evaluate(_data([100.0 - i for i in range(20)]))
    assert result.signal is Signal.BUY
    assert result.strength is Strength.STRONG
    assert result.thresholds == {"oversold": 30.0, "overbought": 70.0}


def test_mild_oversold_is_normal_strength():
    # gains 0.4, losses 1.0 -> RS 0.4
    result = RSIStrategy(period=2).evaluate(_data([3.0, 2.0, 2.4]))
    assert result.indicators["rsi"] == pytest.approx(100 - 100 / 1.4, abs=0.01)
    assert result.signal is Signal.BUY
    assert result.strength is Strength.NORMAL
    assert result.notification_level() is NotificationLevel.WARNING


def test_neutral_reading_holds():
    result = RSIStrategy(period=2).evaluate(_data([10.0, 11.0, 10.0]))
    assert result.signal is Signal.HOLD
    assert not result.should_notify()


def test_insufficient_data_raises():
    strategy = RSIStrategy(period=14)
    assert strategy.required_data_points() == 15
    with pytest.raises(ValueError, match="need 15 bars"):
        strategy.evaluate(_data([100.0] * 14))


@pytest.mark.parametrize("kwargs", [{"period": 0}, {"oversold": 80}, {"overbought": 100}])
def test_invalid_parameters(kwargs):
    with pytest.raises(ValueError):
        RSIStrategy(**kwargs)


def test_registry_builds_rsi_with_params():
    assert available_strategies() == ["rsi"]
    strategy = create_strategy(" RSI ", {"period": 7, "oversold": 20})
    assert isinstance(strategy, RSIStrategy)
    assert (strategy.period, strategy.oversold, strategy.overbought) == (7, 20, 70.0)


def test_unknown_strategy():
    with pytest.raises(ValueError, match="unknown strategy"):
        create_strategy("macd")
