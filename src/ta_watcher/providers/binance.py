"""Binance data source: klines from the Binance public REST API."""

from __future__ import annotations

import dataclasses
import datetime
import logging
from typing import Any

from ta_watcher.errors import ClientRequestError, KlineParseError
from ta_watcher.models import Kline, Timeframe, to_millis, utc_from_millis
from ta_watcher.providers.base import DataSource, clip_and_trim, raise_for_status
from ta_watcher.transport import RateLimitedTransport, RateLimitState

logger = logging.getLogger(__name__)

BASE_URL = "https://api.binance.com"

#: Conservative budget used when no rate-limit configuration is given.
DEFAULT_RATE_LIMIT = RateLimitState(requests_per_minute=1200, retry_delay=1.0, max_retries=3)

_DEFAULT_LIMIT = 500
_PAGE_LIMIT = 1000  # Binance cap per klines request

# Binance kline row layout:
# [open_time_ms, open, high, low, close, volume, close_time_ms,
#  quote_volume, trades, taker_base_volume, taker_quote_volume, ignore]
_MIN_ROW_FIELDS = 11


def normalise_symbol(symbol: str) -> str:
    """Return a Binance-compatible symbol string.

    Examples: ``BTC/USDT`` → ``BTCUSDT``, ``btc-usdt`` → ``BTCUSDT``.
    """
    return symbol.upper().replace("/", "").replace("-", "").strip()


def parse_kline_row(symbol: str, row: Any) -> Kline:
    """Decode one raw kline row. Any malformed row is a hard failure."""
    if not isinstance(row, list) or len(row) < _MIN_ROW_FIELDS:
        raise KlineParseError(f"malformed kline row for {symbol}: {row!r}")
    try:
        return Kline(
            symbol=symbol,
            open_time=utc_from_millis(row[0]),
            close_time=utc_from_millis(row[6]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
    except (TypeError, ValueError, OverflowError) as exc:
        raise KlineParseError(f"invalid kline row for {symbol}: {exc}") from exc


class BinanceDataSource(DataSource):
    """Fetches klines from Binance.

    No API key required. Every timeframe is supported natively; requests
    larger than 1 000 bars are paged backward from *end*.
    """

    name = "binance"

    def __init__(
        self,
        transport: RateLimitedTransport | None = None,
        *,
        base_url: str = BASE_URL,
    ) -> None:
        if transport is None:
            transport = RateLimitedTransport(dataclasses.replace(DEFAULT_RATE_LIMIT))
        super().__init__(transport)
        self.base_url = base_url.rstrip("/")

    async def is_symbol_valid(self, symbol: str) -> bool:
        ticker = normalise_symbol(symbol)
        resp = await self.transport.get(
            f"{self.base_url}/api/v3/ticker/price", params={"symbol": ticker}
        )
        try:
            raise_for_status(resp, f"binance ticker {ticker}")
        except ClientRequestError:
            return False
        return True

    async def get_klines(
        self,
        symbol: str,
        timeframe: Timeframe,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
        limit: int = 0,
    ) -> list[Kline]:
        ticker = normalise_symbol(symbol)
        timeframe = Timeframe.parse(timeframe)
        limit = limit if limit > 0 else _DEFAULT_LIMIT

        collected: list[Kline] = []
        cursor = end
        while len(collected) < limit:
            want = min(limit - len(collected), _PAGE_LIMIT)
            page = await self._fetch_page(ticker, timeframe, cursor, want)
            if not page:
                break
            collected.extend(page)
            earliest = page[0].open_time
            if start is not None and earliest <= start:
                break
            if len(page) < want:
                break
            cursor = earliest - datetime.timedelta(milliseconds=1)

        klines = clip_and_trim(collected, start, end, limit)
        logger.debug("binance %s %s: %d klines", ticker, timeframe, len(klines))
        return klines

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _fetch_page(
        self,
        ticker: str,
        timeframe: Timeframe,
        end: datetime.datetime | None,
        limit: int,
    ) -> list[Kline]:
        params: dict[str, Any] = {
            "symbol": ticker,
            "interval": timeframe.value,
            "limit": limit,
        }
        if end is not None:
            params["endTime"] = to_millis(end)

        resp = await self.transport.get(f"{self.base_url}/api/v3/klines", params=params)
        raise_for_status(resp, f"binance klines {ticker} {timeframe}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise KlineParseError(f"binance klines {ticker}: invalid JSON") from exc
        if not isinstance(data, list):
            raise KlineParseError(f"binance klines {ticker}: unexpected payload {data!r}")

        return [parse_kline_row(ticker, row) for row in data]
