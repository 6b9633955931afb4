"""Watcher: schedules symbol x timeframe checks over a bounded worker pool.

Life cycle is ``CREATED -> RUNNING -> STOPPED``. :meth:`Watcher.start` runs
the daemon loop; :meth:`Watcher.run_once` runs a single bounded cycle.
Both must be driven from one event loop, and :meth:`Watcher.stop` must be
called from that loop (e.g. via ``loop.add_signal_handler``).
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import datetime
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ta_watcher.assets import CrossPair, RateCalculator
from ta_watcher.errors import NotifierError
from ta_watcher.models import Kline, Timeframe
from ta_watcher.notifiers.base import Notification, NotificationLevel, NotificationType
from ta_watcher.notifiers.manager import NotificationManager
from ta_watcher.providers.base import DataSource
from ta_watcher.strategy import MarketData, SignalResult, Strategy

logger = logging.getLogger(__name__)

_MAX_RECENT_ERRORS = 10


class WatcherState(Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class UnitOutcome(Enum):
    SIGNAL = "signal"
    NO_SIGNAL = "no_signal"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class WorkUnit:
    symbol: str
    timeframe: Timeframe

    def __str__(self) -> str:
        return f"{self.symbol}/{self.timeframe}"


@dataclass(slots=True)
class CycleStats:
    """Counters for one evaluation cycle."""

    started_at: datetime.datetime
    units: int = 0
    finished_at: datetime.datetime | None = None
    signals: int = 0
    notifications_sent: int = 0
    outcomes: dict[WorkUnit, UnitOutcome] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def count(self, outcome: UnitOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o is outcome)

    @property
    def completed(self) -> int:
        return len(self.outcomes)

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def summary(self) -> str:
        return (
            f"{self.completed}/{self.units} units in {self.duration:.1f}s: "
            f"{self.count(UnitOutcome.SIGNAL)} with signals, "
            f"{self.count(UnitOutcome.NO_SIGNAL)} without, "
            f"{self.count(UnitOutcome.SKIPPED)} skipped, "
            f"{self.count(UnitOutcome.FAILED)} failed; "
            f"{self.notifications_sent} notifications sent"
        )


@dataclass(slots=True)
class AssetStats:
    """Running counters for one monitored symbol across all timeframes."""

    check_count: int = 0
    last_check: datetime.datetime | None = None
    signal_count: int = 0
    last_signal: str = ""
    last_signal_time: datetime.datetime | None = None


@dataclass(slots=True, frozen=True)
class WatcherStatus:
    """Point-in-time copy of the watcher's run state."""

    state: WatcherState
    started_at: datetime.datetime | None
    cycles: int
    total_signals: int
    total_notifications: int
    last_cycle: CycleStats | None
    recent_errors: tuple[str, ...]
    asset_stats: dict[str, AssetStats] = field(default_factory=dict)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Watcher:
    """Runs strategies over every (symbol, timeframe) pair and notifies on signals.

    Each cycle queues one :class:`WorkUnit` per pair into a queue of
    ``buffer_size`` slots drained by at most ``max_workers`` workers. A unit
    fetches klines, skips if fewer than a strategy requires, evaluates and
    sends a notification for every BUY/SELL. A failing unit is recorded and
    never aborts the cycle.

    Symbols listed in *derived_pairs* are not fetched directly; their klines
    are computed from two legs quoted in *bridge*.
    """

    def __init__(
        self,
        data_source: DataSource,
        strategies: Sequence[Strategy],
        manager: NotificationManager,
        symbols: Sequence[str],
        timeframes: Sequence[Timeframe],
        *,
        interval: float = 300.0,
        max_workers: int = 10,
        buffer_size: int = 100,
        derived_pairs: Mapping[str, CrossPair] | None = None,
        bridge: str = "USDT",
        notification_cooldown: float = 0.0,
        status_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not strategies:
            raise ValueError("at least one strategy is required")
        if interval <= 0 or max_workers <= 0 or buffer_size <= 0:
            raise ValueError("interval, max_workers and buffer_size must be positive")
        self.data_source = data_source
        self.strategies = list(strategies)
        self.manager = manager
        self.symbols = list(symbols)
        self.timeframes = [Timeframe.parse(tf) for tf in timeframes]
        self.interval = interval
        self.max_workers = max_workers
        self.buffer_size = buffer_size
        self.derived_pairs = dict(derived_pairs or {})
        self.bridge = bridge
        self.notification_cooldown = notification_cooldown
        self.status_interval = status_interval
        self._clock = clock
        self._calculator = RateCalculator(data_source)

        self._lock = threading.Lock()
        self._state = WatcherState.CREATED
        self._started_at: datetime.datetime | None = None
        self._cycles = 0
        self._total_signals = 0
        self._total_notifications = 0
        self._last_cycle: CycleStats | None = None
        self._recent_errors: deque[str] = deque(maxlen=_MAX_RECENT_ERRORS)
        self._asset_stats: dict[str, AssetStats] = {}

        self._stop_event = asyncio.Event()
        self._cycle_task: asyncio.Task[CycleStats] | None = None
        self._last_notified: dict[tuple[str, Timeframe, str], float] = {}

    # ------------------------------------------------------------------
    # Life cycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> WatcherState:
        with self._lock:
            return self._state

    async def start(self) -> None:
        """Run cycles every ``interval`` seconds until :meth:`stop` or cancellation."""
        with self._lock:
            if self._state is not WatcherState.CREATED:
                raise RuntimeError(f"cannot start watcher in state {self._state.value}")
            self._state = WatcherState.RUNNING
            self._started_at = _utcnow()
        logger.info(
            "watcher started: %d symbols x %d timeframes every %.0fs",
            len(self.symbols), len(self.timeframes), self.interval,
        )

        reporter = asyncio.create_task(self._report_status())
        try:
            while self.state is WatcherState.RUNNING:
                await self._run_guarded(self.work_units(), apply_cooldown=True)
                if self.state is not WatcherState.RUNNING:
                    break
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        finally:
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)
            self._mark_stopped()
            logger.info("watcher stopped after %d cycles", self._cycles)

    def stop(self) -> None:
        """Stop the watcher and cancel any in-flight cycle. Idempotent."""
        self._mark_stopped()
        self._stop_event.set()
        task = self._cycle_task
        if task is not None and not task.done():
            task.cancel()

    async def run_once(
        self,
        symbols: Iterable[str] | None = None,
        timeframes: Iterable[Timeframe] | None = None,
        timeout: float = 3600.0,
    ) -> CycleStats:
        """Run one cycle and wait for every unit to finish.

        When no unit produced a signal a heartbeat summary is sent instead.

        Raises:
            asyncio.TimeoutError: if the cycle exceeds *timeout* seconds;
                                  in-flight units are cancelled.
            RuntimeError:         if the watcher has been stopped.
        """
        if self.state is WatcherState.STOPPED:
            raise RuntimeError("watcher is stopped")
        units = self.work_units(symbols, timeframes)
        task = asyncio.create_task(self.run_cycle(units, apply_cooldown=False))
        self._cycle_task = task
        try:
            stats = await asyncio.wait_for(task, timeout=timeout)
        finally:
            self._cycle_task = None

        if stats.signals == 0:
            await self._send_summary(stats)
        return stats

    def get_status(self) -> WatcherStatus:
        with self._lock:
            return WatcherStatus(
                state=self._state,
                started_at=self._started_at,
                cycles=self._cycles,
                total_signals=self._total_signals,
                total_notifications=self._total_notifications,
                last_cycle=copy.deepcopy(self._last_cycle),
                recent_errors=tuple(self._recent_errors),
                asset_stats=copy.deepcopy(self._asset_stats),
            )

    def work_units(
        self,
        symbols: Iterable[str] | None = None,
        timeframes: Iterable[Timeframe] | None = None,
    ) -> list[WorkUnit]:
        syms = list(dict.fromkeys(self.symbols if symbols is None else symbols))
        tfs = list(dict.fromkeys(
            self.timeframes if timeframes is None else (Timeframe.parse(t) for t in timeframes)
        ))
        return [WorkUnit(s, tf) for s, tf in itertools.product(syms, tfs)]

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, units: Sequence[WorkUnit], apply_cooldown: bool = False) -> CycleStats:
        """Dispatch every unit exactly once through the worker pool."""
        stats = CycleStats(started_at=_utcnow(), units=len(units))
        queue: asyncio.Queue[WorkUnit] = asyncio.Queue(maxsize=self.buffer_size)
        workers = [
            asyncio.create_task(self._worker(queue, stats, apply_cooldown))
            for _ in range(min(self.max_workers, len(units)))
        ]
        try:
            for unit in units:
                await queue.put(unit)
            await queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            stats.finished_at = _utcnow()
            self._record_cycle(stats)

        logger.info("cycle finished: %s", stats.summary())
        return stats

    async def _run_guarded(self, units: Sequence[WorkUnit], apply_cooldown: bool) -> None:
        task = asyncio.create_task(self.run_cycle(units, apply_cooldown))
        self._cycle_task = task
        try:
            await asyncio.wait({task})
        finally:
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
            self._cycle_task = None

        if task.cancelled():
            logger.info("cycle cancelled")
        elif task.exception() is not None:
            logger.error("cycle failed: %s", task.exception())

    async def _worker(
        self, queue: asyncio.Queue[WorkUnit], stats: CycleStats, apply_cooldown: bool
    ) -> None:
        while True:
            unit = await queue.get()
            try:
                outcome = await self._process(unit, stats, apply_cooldown)
            except Exception as exc:
                logger.warning("%s failed: %s", unit, exc)
                stats.errors.append(f"{unit}: {exc}")
                stats.outcomes[unit] = UnitOutcome.FAILED
            else:
                stats.outcomes[unit] = outcome
            finally:
                queue.task_done()

    async def _process(self, unit: WorkUnit, stats: CycleStats, apply_cooldown: bool) -> UnitOutcome:
        strategies = [s for s in self.strategies if unit.timeframe in s.supported_timeframes()]
        if not strategies:
            return UnitOutcome.SKIPPED

        self._record_check(unit.symbol)
        required = max(s.required_data_points() for s in strategies)
        klines = await self._fetch(unit, limit=required * 2)
        if len(klines) < required:
            logger.info("%s: %d bars, need %d; skipping", unit, len(klines), required)
            return UnitOutcome.SKIPPED

        data = MarketData(unit.symbol, unit.timeframe, tuple(klines), _utcnow())
        outcome = UnitOutcome.NO_SIGNAL
        for strategy in strategies:
            if len(klines) < strategy.required_data_points():
                continue
            try:
                result = strategy.evaluate(data)
            except ValueError as exc:
                logger.debug("%s: %s skipped: %s", unit, strategy.name, exc)
                continue
            if result is None or not result.should_notify():
                continue

            outcome = UnitOutcome.SIGNAL
            stats.signals += 1
            self._record_signal(unit.symbol, result)
            logger.info("%s: %s %s (%s)", unit, strategy.name, result.signal.value, result.message)

            key = (unit.symbol, unit.timeframe, strategy.name)
            if apply_cooldown and self._cooling_down(key):
                logger.info("%s: %s notification suppressed by cooldown", unit, strategy.name)
                continue
            notification = self._signal_notification(unit, strategy, result, klines[-1])
            if await self._notify(notification):
                stats.notifications_sent += 1
                self._last_notified[key] = self._clock()
        return outcome

    async def _fetch(self, unit: WorkUnit, limit: int) -> list[Kline]:
        pair = self.derived_pairs.get(unit.symbol)
        if pair is not None:
            return await self._calculator.calculate_rate(
                pair.base, pair.quote, self.bridge, unit.timeframe, limit=limit
            )
        return await self.data_source.get_klines(unit.symbol, unit.timeframe, limit=limit)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _cooling_down(self, key: tuple[str, Timeframe, str]) -> bool:
        if self.notification_cooldown <= 0:
            return False
        last = self._last_notified.get(key)
        return last is not None and self._clock() - last < self.notification_cooldown

    def _signal_notification(
        self, unit: WorkUnit, strategy: Strategy, result: SignalResult, last: Kline
    ) -> Notification:
        data = {
            "signal": result.signal.value,
            "strength": result.strength.value,
            "timeframe": str(unit.timeframe),
            "price": last.close,
        }
        data.update(result.indicators)
        return Notification(
            type=NotificationType.STRATEGY_SIGNAL,
            level=result.notification_level(),
            title=f"{result.signal.value} {unit.symbol} {unit.timeframe} ({strategy.name})",
            message=result.message,
            asset=unit.symbol,
            strategy=strategy.name,
            data=data,
        )

    async def _notify(self, notification: Notification) -> bool:
        if not self.manager.total_count():
            logger.info("no notifiers configured; %s", notification.title)
            return False
        try:
            return await asyncio.to_thread(self.manager.send, notification)
        except NotifierError as exc:
            logger.error("notification %r not delivered: %s", notification.title, exc)
            with self._lock:
                self._recent_errors.append(str(exc))
            return False

    async def _send_summary(self, stats: CycleStats) -> None:
        notification = Notification(
            type=NotificationType.HEARTBEAT,
            level=NotificationLevel.INFO,
            title="TA Watcher: no signals",
            message=f"Single run finished with no trading signals. {stats.summary()}",
            data={"units": stats.units, "failed": stats.count(UnitOutcome.FAILED)},
        )
        await self._notify(notification)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _mark_stopped(self) -> None:
        with self._lock:
            self._state = WatcherState.STOPPED

    def _record_check(self, symbol: str) -> None:
        with self._lock:
            entry = self._asset_stats.setdefault(symbol, AssetStats())
            entry.check_count += 1
            entry.last_check = _utcnow()

    def _record_signal(self, symbol: str, result: SignalResult) -> None:
        with self._lock:
            entry = self._asset_stats.setdefault(symbol, AssetStats())
            entry.signal_count += 1
            entry.last_signal = result.signal.value
            entry.last_signal_time = _utcnow()

    def _record_cycle(self, stats: CycleStats) -> None:
        with self._lock:
            self._cycles += 1
            self._total_signals += stats.signals
            self._total_notifications += stats.notifications_sent
            self._last_cycle = copy.deepcopy(stats)
            self._recent_errors.extend(stats.errors)

    async def _report_status(self) -> None:
        while True:
            await asyncio.sleep(self.status_interval)
            status = self.get_status()
            logger.info(
                "status: %s, %d cycles, %d signals, %d notifications, %d recent errors",
                status.state.value, status.cycles, status.total_signals,
                status.total_notifications, len(status.recent_errors),
            )
