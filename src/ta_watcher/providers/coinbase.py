"""Coinbase Exchange data source, with weekly/monthly bars synthesized from daily candles."""

from __future__ import annotations

import dataclasses
import datetime
import logging
from typing import Any

from ta_watcher.aggregation import aggregate_klines
from ta_watcher.errors import ClientRequestError, KlineParseError, UnsupportedTimeframeError
from ta_watcher.models import Kline, Timeframe
from ta_watcher.providers.base import DataSource, clip_and_trim, raise_for_status
from ta_watcher.transport import RateLimitedTransport, RateLimitState

logger = logging.getLogger(__name__)

BASE_URL = "https://api.exchange.coinbase.com"

#: Coinbase public endpoints throttle aggressively; keep well under the limit.
DEFAULT_RATE_LIMIT = RateLimitState(requests_per_minute=20, retry_delay=20.0, max_retries=10)

_DEFAULT_LIMIT = 300
_PAGE_SIZE = 300  # Coinbase returns at most 300 candles per request
_USER_AGENT = "ta-watcher"

# Native candle granularities in seconds
_GRANULARITY: dict[Timeframe, int] = {
    Timeframe.M1: 60,
    Timeframe.M5: 300,
    Timeframe.M15: 900,
    Timeframe.H1: 3600,
    Timeframe.H6: 21600,
    Timeframe.D1: 86400,
}

# Built from daily candles
_AGGREGATED = frozenset({Timeframe.W1, Timeframe.MO1})

_KNOWN_QUOTES = ("USDT", "USD")


def to_coinbase_symbol(symbol: str) -> str:
    """Translate an exchange-neutral symbol to a Coinbase product id.

    A trailing ``USDT`` or ``USD`` is split off as the quote currency;
    otherwise the last three characters are assumed to be the quote.
    Symbols that already contain a hyphen are only uppercased.

    Examples: ``BTCUSDT`` → ``BTC-USDT``, ``ETHUSD`` → ``ETH-USD``,
    ``ETHBTC`` → ``ETH-BTC``.
    """
    up = symbol.upper().replace("/", "-").strip()
    if "-" in up:
        return up
    for quote in _KNOWN_QUOTES:
        if up.endswith(quote) and len(up) > len(quote):
            return f"{up[: -len(quote)]}-{quote}"
    if len(up) > 3:
        return f"{up[:-3]}-{up[-3:]}"
    return up


def from_coinbase_symbol(product_id: str) -> str:
    return product_id.replace("-", "").upper()


class CoinbaseDataSource(DataSource):
    """Fetches candles from the Coinbase Exchange public API.

    Supports ``1m``, ``5m``, ``15m``, ``1h``, ``6h`` and ``1d`` natively.
    ``1w`` and ``1M`` are aggregated from daily candles in UTC. Other
    timeframes raise :class:`~ta_watcher.errors.UnsupportedTimeframeError`.
    """

    name = "coinbase"

    def __init__(
        self,
        transport: RateLimitedTransport | None = None,
        *,
        base_url: str = BASE_URL,
    ) -> None:
        if transport is None:
            transport = RateLimitedTransport(
                dataclasses.replace(DEFAULT_RATE_LIMIT),
                headers={"User-Agent": _USER_AGENT},
            )
        super().__init__(transport)
        self.base_url = base_url.rstrip("/")

    def supported_timeframes(self) -> list[Timeframe]:
        return sorted(set(_GRANULARITY) | _AGGREGATED)

    async def is_symbol_valid(self, symbol: str) -> bool:
        product = to_coinbase_symbol(symbol)
        resp = await self.transport.get(f"{self.base_url}/products/{product}/ticker")
        try:
            raise_for_status(resp, f"coinbase ticker {product}")
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
        timeframe = Timeframe.parse(timeframe)
        aggregated = timeframe in _AGGREGATED
        if not aggregated and timeframe not in _GRANULARITY:
            raise UnsupportedTimeframeError(f"coinbase does not support timeframe {timeframe}")

        limit = limit if limit > 0 else _DEFAULT_LIMIT
        fetch_tf = Timeframe.D1 if aggregated else timeframe
        granularity = _GRANULARITY[fetch_tf]

        if end is None:
            end = datetime.datetime.now(datetime.timezone.utc)
        if start is None:
            # One extra bucket so a partial leading bucket does not eat into *limit*
            start = end - timeframe.duration * (limit + 1)

        product = to_coinbase_symbol(symbol)
        neutral = from_coinbase_symbol(product)
        raw = await self._fetch_range(product, neutral, granularity, start, end)

        klines = clip_and_trim(raw, start, end, 0)
        if aggregated:
            klines = aggregate_klines(klines, timeframe)
        klines = klines[-limit:]
        logger.debug("coinbase %s %s: %d klines", product, timeframe, len(klines))
        return klines

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _fetch_range(
        self,
        product: str,
        symbol: str,
        granularity: int,
        start: datetime.datetime,
        end: datetime.datetime,
    ) -> list[Kline]:
        """Walk backward from *end* in 300-candle windows until *start*."""
        window = datetime.timedelta(seconds=granularity * _PAGE_SIZE)
        collected: list[Kline] = []
        window_end = end
        while window_end > start:
            window_start = max(start, window_end - window)
            page = await self._fetch_page(product, symbol, granularity, window_start, window_end)
            if not page:
                break
            collected.extend(page)
            window_end = window_start
        return collected

    async def _fetch_page(
        self,
        product: str,
        symbol: str,
        granularity: int,
        start: datetime.datetime,
        end: datetime.datetime,
    ) -> list[Kline]:
        params = {
            "granularity": granularity,
            "start": _rfc3339(start),
            "end": _rfc3339(end),
        }
        resp = await self.transport.get(f"{self.base_url}/products/{product}/candles", params=params)
        raise_for_status(resp, f"coinbase candles {product}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise KlineParseError(f"coinbase candles {product}: invalid JSON") from exc
        if not isinstance(data, list):
            raise KlineParseError(f"coinbase candles {product}: unexpected payload {data!r}")

        step = datetime.timedelta(seconds=granularity) - datetime.timedelta(milliseconds=1)
        klines: list[Kline] = []
        for row in data:
            kline = _parse_candle(symbol, row, step)
            if kline is not None:
                klines.append(kline)
        return klines


def _rfc3339(ts: datetime.datetime) -> str:
    return ts.astimezone(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_candle(symbol: str, row: Any, step: datetime.timedelta) -> Kline | None:
    # Coinbase candle row layout: [time_s, low, high, open, close, volume]
    if not isinstance(row, list) or len(row) < 6:
        logger.debug("skipping malformed coinbase candle for %s: %r", symbol, row)
        return None
    try:
        opened = datetime.datetime.fromtimestamp(int(row[0]), tz=datetime.timezone.utc)
        return Kline(
            symbol=symbol,
            open_time=opened,
            close_time=opened + step,
            open=float(row[3]),
            high=float(row[2]),
            low=float(row[1]),
            close=float(row[4]),
            volume=float(row[5]),
        )
    except (TypeError, ValueError, OverflowError) as exc:
        logger.debug("skipping invalid coinbase candle for %s: %s", symbol, exc)
        return None
