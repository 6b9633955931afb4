"""Synthesize weekly and monthly klines from daily bars.

Bucket boundaries are computed in UTC regardless of the timezone attached to
the input timestamps.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Sequence

from ta_watcher.errors import UnsupportedTimeframeError
from ta_watcher.models import Kline, Timeframe

_UTC = datetime.timezone.utc
_WEEK_SPAN = datetime.timedelta(days=6)


def merge_klines(bucket: Sequence[Kline]) -> Kline:
    """Collapse an ascending run of bars into one bar.

    First open, last close, max high, min low, summed volume.
    """
    if not bucket:
        raise ValueError("cannot merge an empty bucket")
    first, last = bucket[0], bucket[-1]
    return Kline(
        symbol=first.symbol,
        open_time=first.open_time,
        close_time=last.close_time,
        open=first.open,
        high=max(k.high for k in bucket),
        low=min(k.low for k in bucket),
        close=last.close,
        volume=sum(k.volume for k in bucket),
    )


def _week_anchor(ts: datetime.datetime) -> datetime.datetime:
    """Monday 00:00 UTC of the week containing *ts*."""
    day = ts.astimezone(_UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return day - datetime.timedelta(days=day.weekday())


def _sorted(daily: Iterable[Kline]) -> list[Kline]:
    return sorted(daily, key=lambda k: k.open_time)


def aggregate_weekly(daily: Iterable[Kline]) -> list[Kline]:
    """Group daily bars into Monday-anchored weeks.

    A new week starts on a Monday bar that lies more than six days past the
    Monday anchor of the current week. A repeated Monday therefore stays in
    the same bucket, and a partial leading week (starting mid-week) closes
    at the first following Monday.
    """
    buckets: list[list[Kline]] = []
    anchor: datetime.datetime | None = None

    for kline in _sorted(daily):
        opened = kline.open_time.astimezone(_UTC)
        if anchor is None or (opened.weekday() == 0 and opened - anchor > _WEEK_SPAN):
            buckets.append([])
            anchor = _week_anchor(opened)
        buckets[-1].append(kline)

    return [merge_klines(b) for b in buckets]


def aggregate_monthly(daily: Iterable[Kline]) -> list[Kline]:
    """Group daily bars by UTC calendar month.

    A month normally opens on its day-1 bar; if that bar is missing the first
    bar seen in the new month still opens the bucket.
    """
    buckets: list[list[Kline]] = []
    current: tuple[int, int] | None = None

    for kline in _sorted(daily):
        opened = kline.open_time.astimezone(_UTC)
        key = (opened.year, opened.month)
        if key != current:
            buckets.append([])
            current = key
        buckets[-1].append(kline)

    return [merge_klines(b) for b in buckets]


def aggregate_klines(daily: Iterable[Kline], timeframe: Timeframe) -> list[Kline]:
    """Aggregate daily bars into *timeframe* (``1w`` or ``1M``)."""
    if timeframe is Timeframe.W1:
        return aggregate_weekly(daily)
    if timeframe is Timeframe.MO1:
        return aggregate_monthly(daily)
    raise UnsupportedTimeframeError(f"cannot aggregate daily bars into {timeframe}")
