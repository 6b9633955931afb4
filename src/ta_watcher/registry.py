"""Data source registry: builds an exchange client from its name and configuration.

Each exchange keeps its own default rate-limit budget; a missing section in
the configuration falls back to that exchange's default, never another's.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from typing import TYPE_CHECKING

from ta_watcher.errors import UnsupportedSourceError
from ta_watcher.providers.base import DataSource
from ta_watcher.transport import RateLimitedTransport, RateLimitState

if TYPE_CHECKING:
    from ta_watcher.config import DataSourceConfig, RateLimitConfig


def _state_from(config: RateLimitConfig | None, default: RateLimitState) -> RateLimitState:
    if config is None:
        return dataclasses.replace(default)
    return RateLimitState(
        requests_per_minute=config.requests_per_minute,
        retry_delay=config.retry_delay,
        max_retries=config.max_retries,
    )


def _create_binance(config: DataSourceConfig | None) -> DataSource:
    from ta_watcher.providers.binance import DEFAULT_RATE_LIMIT, BinanceDataSource  # noqa: PLC0415

    if config is None:
        return BinanceDataSource()
    transport = RateLimitedTransport(
        _state_from(config.binance, DEFAULT_RATE_LIMIT), timeout=config.timeout
    )
    return BinanceDataSource(transport)


def _create_coinbase(config: DataSourceConfig | None) -> DataSource:
    from ta_watcher.providers.coinbase import DEFAULT_RATE_LIMIT, CoinbaseDataSource  # noqa: PLC0415

    if config is None:
        return CoinbaseDataSource()
    transport = RateLimitedTransport(
        _state_from(config.coinbase, DEFAULT_RATE_LIMIT),
        timeout=config.timeout,
        headers={"User-Agent": "ta-watcher"},
    )
    return CoinbaseDataSource(transport)


_FACTORIES: dict[str, Callable[[DataSourceConfig | None], DataSource]] = {
    "binance": _create_binance,
    "coinbase": _create_coinbase,
}


def supported_sources() -> list[str]:
    return list(_FACTORIES)


def create_data_source(source_type: str, config: DataSourceConfig | None = None) -> DataSource:
    """Construct the exchange client registered under *source_type*.

    Args:
        source_type: ``binance`` or ``coinbase`` (case-insensitive).
        config:      Data source settings; ``None`` uses each exchange's defaults.

    Raises:
        UnsupportedSourceError: for any other name, including the empty string.
    """
    factory = _FACTORIES.get((source_type or "").strip().lower())
    if factory is None:
        raise UnsupportedSourceError(f"unsupported data source type: {source_type!r}")
    return factory(config)
