import asyncio
import datetime
from collections import Counter

import pytest
from conftest import FakeDataSource, RecordingNotifier, daily_klines

from ta_watcher.assets import CrossPair
from ta_watcher.models import Timeframe
from ta_watcher.notifiers.base import NotificationLevel, NotificationType
from ta_watcher.notifiers.manager import NotificationManager
from ta_watcher.strategy import MarketData, Signal, SignalResult, Strategy, Strength
from ta_watcher.watcher import AssetStats, UnitOutcome, Watcher, WatcherState, WorkUnit

SYMBOLS = ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
TIMEFRAMES = [Timeframe.D1, Timeframe.W1]


class ScriptedStrategy(Strategy):
    """Emits a fixed signal per symbol; everything else is HOLD."""

    name = "scripted"
    description = "test strategy"

    def __init__(self, signals=None, required=5, timeframes=None):
        self.signals = signals or {}
        self.required = required
        self.timeframes = timeframes
        self.seen: list[tuple[str, Timeframe, int]] = []

    def required_data_points(self) -> int:
        return self.required

    def supported_timeframes(self):
        return self.timeframes if self.timeframes is not None else super().supported_timeframes()

    def evaluate(self, data: MarketData):
        self.seen.append((data.symbol, data.timeframe, len(data.klines)))
        signal = self.signals.get(data.symbol, Signal.HOLD)
        return SignalResult(signal=signal, strength=Strength.STRONG, message=f"{signal.value} {data.symbol}")


def _source(**kwargs):
    klines = {s: daily_klines(datetime.date(2024, 1, 1), 30, symbol=s) for s in SYMBOLS}
    return FakeDataSource(klines=klines, **kwargs)


def _manager(*notifiers):
    manager = NotificationManager()
    for n in notifiers:
        manager.add_notifier(n)
    return manager


def _watcher(source, strategy, manager, **kwargs):
    kwargs.setdefault("max_workers", 2)
    kwargs.setdefault("buffer_size", 1)
    return Watcher(source, [strategy], manager, SYMBOLS, TIMEFRAMES, **kwargs)


@pytest.mark.asyncio
async def test_single_run_dispatches_every_unit_exactly_once():
    source = _source(delay=0.01)
    strategy = ScriptedStrategy()
    watcher = _watcher(source, strategy, _manager(RecordingNotifier("n")))

    stats = await watcher.run_once(timeout=10)

    expected = {(s, tf) for s in SYMBOLS for tf in TIMEFRAMES}
    assert Counter(source.calls) == Counter({unit: 1 for unit in expected})
    assert stats.units == stats.completed == 6
    assert set(stats.outcomes) == {WorkUnit(s, tf) for s, tf in expected}
    assert stats.count(UnitOutcome.NO_SIGNAL) == 6


@pytest.mark.asyncio
async def test_signal_is_sent_with_strength_mapped_level():
    notifier = RecordingNotifier("n")
    strategy = ScriptedStrategy({"ETHUSDT": Signal.BUY})
    watcher = _watcher(_source(), strategy, _manager(notifier))

    stats = await watcher.run_once(symbols=["ETHUSDT"], timeframes=[Timeframe.D1])

    assert stats.signals == 1 and stats.notifications_sent == 1
    (note,) = notifier.received
    assert note.type is NotificationType.STRATEGY_SIGNAL
    assert note.level is NotificationLevel.CRITICAL
    assert note.asset == "ETHUSDT" and note.strategy == "scripted"
    assert note.data["signal"] == "BUY"


@pytest.mark.asyncio
async def test_no_signal_single_run_sends_heartbeat_summary():
    notifier = RecordingNotifier("n")
    watcher = _watcher(_source(), ScriptedStrategy(), _manager(notifier))

    await watcher.run_once()

    (note,) = notifier.received
    assert note.type is NotificationType.HEARTBEAT


@pytest.mark.asyncio
async def test_failing_unit_does_not_abort_cycle():
    source = _source(failing={"ETHUSDT"})
    strategy = ScriptedStrategy({"BTCUSDT": Signal.SELL})
    notifier = RecordingNotifier("n")
    watcher = _watcher(source, strategy, _manager(notifier))

    stats = await watcher.run_once()

    assert stats.count(UnitOutcome.FAILED) == 2
    assert stats.count(UnitOutcome.SIGNAL) == 2
    assert stats.count(UnitOutcome.NO_SIGNAL) == 2
    assert len(stats.errors) == 2
    assert len(notifier.received) == 2


@pytest.mark.asyncio
async def test_insufficient_data_is_a_skip():
    strategy = ScriptedStrategy(required=50)
    watcher = _watcher(_source(), strategy, _manager(RecordingNotifier("n")))

    stats = await watcher.run_once()

    assert stats.count(UnitOutcome.SKIPPED) == 6
    assert strategy.seen == []


@pytest.mark.asyncio
async def test_unsupported_timeframe_for_strategy_is_skipped():
    strategy = ScriptedStrategy(timeframes=[Timeframe.D1])
    source = _source()
    watcher = _watcher(source, strategy, _manager(RecordingNotifier("n")))

    stats = await watcher.run_once()

    assert stats.count(UnitOutcome.SKIPPED) == 3
    assert all(tf is Timeframe.D1 for _, tf in source.calls)


@pytest.mark.asyncio
async def test_all_notifiers_failing_is_logged_not_raised():
    strategy = ScriptedStrategy({"BTCUSDT": Signal.BUY})
    watcher = _watcher(_source(), strategy, _manager(RecordingNotifier("bad", fail=True)))

    stats = await watcher.run_once(symbols=["BTCUSDT"], timeframes=[Timeframe.D1])

    assert stats.signals == 1 and stats.notifications_sent == 0
    assert watcher.get_status().recent_errors


@pytest.mark.asyncio
async def test_without_notifiers_signals_are_only_logged():
    strategy = ScriptedStrategy({"BTCUSDT": Signal.BUY})
    watcher = _watcher(_source(), strategy, NotificationManager())

    stats = await watcher.run_once(symbols=["BTCUSDT"], timeframes=[Timeframe.D1])
    await watcher.run_once(symbols=["ETHUSDT"], timeframes=[Timeframe.D1])

    assert stats.signals == 1 and stats.notifications_sent == 0
    assert watcher.get_status().recent_errors == ()


@pytest.mark.asyncio
async def test_status_tracks_per_asset_checks_and_signals():
    strategy = ScriptedStrategy({"BTCUSDT": Signal.SELL})
    watcher = _watcher(_source(failing={"SOLUSDT"}), strategy, _manager(RecordingNotifier("n")))

    await watcher.run_once()
    status = watcher.get_status()

    btc, eth = status.asset_stats["BTCUSDT"], status.asset_stats["ETHUSDT"]
    assert btc.check_count == 2 and btc.signal_count == 2
    assert btc.last_signal == "SELL"
    assert btc.last_signal_time is not None and btc.last_check is not None
    assert eth.check_count == 2 and eth.signal_count == 0
    assert eth.last_signal == "" and eth.last_signal_time is None
    assert status.asset_stats["SOLUSDT"].check_count == 2

    status.asset_stats["BTCUSDT"].check_count = 99
    assert watcher.get_status().asset_stats["BTCUSDT"] == AssetStats(
        check_count=2,
        last_check=btc.last_check,
        signal_count=2,
        last_signal="SELL",
        last_signal_time=btc.last_signal_time,
    )


@pytest.mark.asyncio
async def test_single_run_respects_timeout():
    source = _source(delay=5)
    watcher = _watcher(source, ScriptedStrategy(), _manager(RecordingNotifier("n")))

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(asyncio.TimeoutError):
        await watcher.run_once(timeout=0.1)
    assert loop.time() - started < 2


@pytest.mark.asyncio
async def test_derived_pairs_use_rate_calculator():
    source = _source()
    strategy = ScriptedStrategy()
    watcher = Watcher(
        source, [strategy], _manager(RecordingNotifier("n")), ["ETHBTC"], [Timeframe.D1],
        derived_pairs={"ETHBTC": CrossPair("ETH", "BTC")}, bridge="USDT",
    )

    stats = await watcher.run_once()

    assert stats.count(UnitOutcome.NO_SIGNAL) == 1
    assert sorted(s for s, _ in source.calls) == ["BTCUSDT", "ETHUSDT"]
    assert strategy.seen[0][0] == "ETHBTC"


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_daemon_runs_cycles_until_stopped():
    watcher = _watcher(_source(), ScriptedStrategy(), _manager(RecordingNotifier("n")), interval=0.02)
    assert watcher.state is WatcherState.CREATED

    task = asyncio.create_task(watcher.start())
    await _wait_for(lambda: watcher.get_status().cycles >= 2)
    assert watcher.state is WatcherState.RUNNING

    watcher.stop()
    await asyncio.wait_for(task, timeout=2)

    status = watcher.get_status()
    assert status.state is WatcherState.STOPPED
    assert status.last_cycle is not None and status.last_cycle.completed == 6
    cycles = status.cycles
    await asyncio.sleep(0.1)
    assert watcher.get_status().cycles == cycles

    with pytest.raises(RuntimeError):
        await watcher.run_once()
    with pytest.raises(RuntimeError):
        await watcher.start()


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_cycle():
    source = _source(delay=10)
    watcher = _watcher(source, ScriptedStrategy(), _manager(RecordingNotifier("n")))

    task = asyncio.create_task(watcher.start())
    await _wait_for(lambda: len(source.calls) >= 1)
    watcher.stop()

    await asyncio.wait_for(task, timeout=2)
    assert watcher.state is WatcherState.STOPPED


@pytest.mark.asyncio
async def test_daemon_cooldown_suppresses_repeat_notifications():
    notifier = RecordingNotifier("n")
    strategy = ScriptedStrategy({"BTCUSDT": Signal.BUY})
    watcher = Watcher(
        _source(), [strategy], _manager(notifier), ["BTCUSDT"], [Timeframe.D1],
        interval=0.01, notification_cooldown=60,
    )

    task = asyncio.create_task(watcher.start())
    await _wait_for(lambda: watcher.get_status().cycles >= 3)
    watcher.stop()
    await asyncio.wait_for(task, timeout=2)

    status = watcher.get_status()
    assert status.total_signals >= 3
    assert len(notifier.received) == 1
    assert status.total_notifications == 1


def test_constructor_validation():
    with pytest.raises(ValueError):
        Watcher(_source(), [], NotificationManager(), SYMBOLS, TIMEFRAMES)
    with pytest.raises(ValueError):
        Watcher(_source(), [ScriptedStrategy()], NotificationManager(), SYMBOLS, TIMEFRAMES, max_workers=0)
