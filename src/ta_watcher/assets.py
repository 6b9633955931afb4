"""Pre-flight asset validation and derived cross-rate klines."""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ta_watcher.config import AssetsConfig
from ta_watcher.errors import AssetValidationError, DataFetchError
from ta_watcher.models import Kline, Timeframe
from ta_watcher.providers.base import DataSource

logger = logging.getLogger(__name__)

#: Rough market capitalisations in USD used to order cross pairs.
DEFAULT_MARKET_CAPS: dict[str, float] = {
    "BTC": 800e9,
    "ETH": 400e9,
    "BNB": 50e9,
    "SOL": 30e9,
    "ADA": 20e9,
    "AVAX": 12e9,
    "DOT": 10e9,
    "MATIC": 8e9,
}


@dataclass(slots=True, frozen=True)
class CrossPair:
    """``base`` priced in ``quote``, e.g. ETH in BTC."""

    base: str
    quote: str

    @property
    def symbol(self) -> str:
        return f"{self.base}{self.quote}"


@dataclass(slots=True)
class ValidationResult:
    """Outcome of :meth:`AssetValidator.validate`.

    Attributes:
        base_currency:    Quote currency of the base pairs (e.g. ``USDT``).
        valid_symbols:    Base assets whose ``<asset><base_currency>`` pair exists.
        valid_pairs:      Cross pairs listed directly on the exchange.
        calculated_pairs: Cross pairs not listed, derived from two validated legs.
        missing_symbols:  Configured pairs that could not be validated.
        timeframes:       Configured timeframes the data source can serve.
    """

    base_currency: str
    valid_symbols: list[str] = field(default_factory=list)
    valid_pairs: list[str] = field(default_factory=list)
    calculated_pairs: list[CrossPair] = field(default_factory=list)
    missing_symbols: list[str] = field(default_factory=list)
    timeframes: list[Timeframe] = field(default_factory=list)

    def base_pairs(self) -> list[str]:
        return [f"{s}{self.base_currency}" for s in self.valid_symbols]

    def monitoring_symbols(self) -> list[str]:
        """Base pairs first, then listed cross pairs, then calculated ones."""
        return (
            self.base_pairs()
            + list(self.valid_pairs)
            + [p.symbol for p in self.calculated_pairs]
        )

    def derived_pairs(self) -> dict[str, CrossPair]:
        return {p.symbol: p for p in self.calculated_pairs}

    def summary(self) -> str:
        lines = [
            f"valid symbols ({len(self.valid_symbols)}): {', '.join(self.base_pairs()) or '-'}",
            f"cross pairs ({len(self.valid_pairs)}): {', '.join(self.valid_pairs) or '-'}",
            "calculated pairs ({}): {}".format(
                len(self.calculated_pairs),
                ", ".join(p.symbol for p in self.calculated_pairs) or "-",
            ),
            f"timeframes: {', '.join(str(t) for t in self.timeframes) or '-'}",
        ]
        if self.missing_symbols:
            lines.append(f"missing ({len(self.missing_symbols)}): {', '.join(self.missing_symbols)}")
        return "\n".join(lines)


def generate_cross_pairs(
    symbols: Sequence[str],
    market_caps: Mapping[str, float] | None = None,
    max_pairs: int = 10,
) -> list[CrossPair]:
    """Pair every lower-cap asset against each higher-cap one.

    Assets are ranked by market cap (unknown assets rank last, ties by name);
    the result is capped at *max_pairs*.
    """
    caps = DEFAULT_MARKET_CAPS if market_caps is None else market_caps
    ranked = sorted(dict.fromkeys(symbols), key=lambda s: (-caps.get(s, 0.0), s))
    pairs: list[CrossPair] = []
    for i, higher in enumerate(ranked):
        for lower in ranked[i + 1 :]:
            if len(pairs) >= max_pairs:
                return pairs
            pairs.append(CrossPair(base=lower, quote=higher))
    return pairs


class AssetValidator:
    """Checks configured assets against the active data source before scheduling.

    Missing assets are reported in the result and logged, never raised, as
    long as at least one base pair validates.
    """

    def __init__(
        self,
        data_source: DataSource,
        config: AssetsConfig,
        market_caps: Mapping[str, float] | None = None,
    ) -> None:
        self.data_source = data_source
        self.config = config
        self.market_caps = market_caps

    async def validate(self) -> ValidationResult:
        base = self.config.base_currency.upper()
        result = ValidationResult(base_currency=base)

        assets = [s.upper() for s in self.config.symbols if s.upper() != base]
        assets = [s[: -len(base)] if s.endswith(base) and len(s) > len(base) else s for s in assets]
        assets = list(dict.fromkeys(assets))

        checks = await asyncio.gather(*(self._check(f"{a}{base}") for a in assets))
        for asset, ok in zip(assets, checks):
            if ok:
                result.valid_symbols.append(asset)
            else:
                result.missing_symbols.append(f"{asset}{base}")

        if not result.valid_symbols:
            raise AssetValidationError(
                f"no valid symbols on {self.data_source.name}: {', '.join(result.missing_symbols)}"
            )

        pairs = generate_cross_pairs(
            result.valid_symbols, self.market_caps, self.config.max_cross_pairs
        )
        listed = await asyncio.gather(*(self._check(p.symbol) for p in pairs))
        for pair, ok in zip(pairs, listed):
            if ok:
                result.valid_pairs.append(pair.symbol)
            else:
                result.calculated_pairs.append(pair)

        supported = set(self.data_source.supported_timeframes())
        for raw in self.config.timeframes:
            tf = Timeframe.parse(raw)
            if tf in supported:
                result.timeframes.append(tf)
            else:
                logger.warning("%s does not support timeframe %s; skipping", self.data_source.name, tf)
        if not result.timeframes:
            raise AssetValidationError(f"no configured timeframe is supported by {self.data_source.name}")

        if result.missing_symbols:
            logger.warning("missing symbols: %s", ", ".join(result.missing_symbols))
        logger.info("asset validation complete:\n%s", result.summary())
        return result

    async def _check(self, symbol: str) -> bool:
        try:
            return await self.data_source.is_symbol_valid(symbol)
        except DataFetchError as exc:
            logger.warning("could not validate %s: %s", symbol, exc)
            return False


class RateCalculator:
    """Derives cross-rate klines from two legs quoted in a common bridge currency.

    For ``base``/``quote`` via ``bridge``: open and close are the leg ratios,
    high is ``base.high / quote.low``, low is ``base.low / quote.high`` and
    volume is zero. Bars are matched on ``open_time``; unmatched bars are
    dropped.
    """

    def __init__(self, data_source: DataSource) -> None:
        self.data_source = data_source

    async def calculate_rate(
        self,
        base: str,
        quote: str,
        bridge: str,
        timeframe: Timeframe,
        start: datetime.datetime | None = None,
        end: datetime.datetime | None = None,
        limit: int = 0,
    ) -> list[Kline]:
        base_klines, quote_klines = await asyncio.gather(
            self.data_source.get_klines(f"{base}{bridge}", timeframe, start, end, limit),
            self.data_source.get_klines(f"{quote}{bridge}", timeframe, start, end, limit),
        )
        by_time = {k.open_time: k for k in quote_klines}
        symbol = f"{base}{quote}"

        rates: list[Kline] = []
        for b in base_klines:
            q = by_time.get(b.open_time)
            if q is None:
                continue
            rates.append(
                Kline(
                    symbol=symbol,
                    open_time=b.open_time,
                    close_time=b.close_time,
                    open=b.open / q.open,
                    high=b.high / q.low,
                    low=b.low / q.high,
                    close=b.close / q.close,
                    volume=0.0,
                )
            )

        if not rates:
            raise DataFetchError(f"no overlapping klines to derive {symbol} via {bridge}")
        return rates
