"""Abstract base class for exchange data sources."""

from __future__ import annotations

import datetime
from abc import ABC, abstractmethod

from ta_watcher.errors import ClientRequestError, DataFetchError
from ta_watcher.models import Kline, Timeframe
from ta_watcher.transport import RateLimitedTransport, Response


class DataSource(ABC):
    """Base class every exchange client must implement.

    A data source owns one :class:`~ta_watcher.transport.RateLimitedTransport`
    and therefore one request budget. Clients are async context managers;
    leaving the context closes the underlying HTTP session.
    """

    #: Registry key and human-readable name used in logs and error messages.
    name: str = ""

    def __init__(self, transport: RateLimitedTransport) -> None:
        self.transport = transport

    @abstractmethod
    async def is_symbol_valid(self, symbol: str) -> bool:
        """Return True if *symbol* is listed on this exchange.

        Network failures propagate as :class:`~ta_watcher.errors.DataFetchError`
        and are never reported as "invalid".
        """

    @abstractmethod
    async def get_klines(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
        limit: int = 0,
    ) -> list[Kline]:
        """Fetch klines for *symbol*.

        Args:
            symbol:    Exchange-neutral symbol (e.g. ``BTCUSDT``).
            timeframe: Bar granularity.
            start:     Earliest bar open time to include (UTC), or ``None``.
            end:       Latest bar open time to include (UTC), or ``None`` for now.
            limit:     Maximum number of bars; ``0`` means the client default.

        Returns:
            Bars ascending by ``open_time``, clipped to ``[start, end]`` and
            truncated to the most recent *limit* entries.
        """

    def supported_timeframes(self) -> list[Timeframe]:
        """Timeframes this source can serve, natively or by aggregation."""
        return list(Timeframe)

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> DataSource:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def clip_and_trim(
    klines: list[Kline],
    start: datetime.datetime | None,
    end: datetime.datetime | None,
    limit: int,
) -> list[Kline]:
    """Sort, de-duplicate by open time, clip to ``[start, end]`` and keep the last *limit*."""
    seen: dict[datetime.datetime, Kline] = {}
    for kline in klines:
        if start is not None and kline.open_time < start:
            continue
        if end is not None and kline.open_time > end:
            continue
        seen[kline.open_time] = kline
    ordered = [seen[t] for t in sorted(seen)]
    if limit > 0:
        ordered = ordered[-limit:]
    return ordered


def raise_for_status(response: Response, context: str) -> None:
    """Raise the matching fetch error for a non-200 *response*."""
    if response.status == 200:
        return
    detail = response.text()[:200]
    if 400 <= response.status < 500:
        raise ClientRequestError(
            f"{context}: HTTP {response.status}: {detail}", status=response.status
        )
    raise DataFetchError(f"{context}: HTTP {response.status}: {detail}", status=response.status)
