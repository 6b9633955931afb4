import pytest

from ta_watcher.config import DataSourceConfig, RateLimitConfig
from ta_watcher.errors import UnsupportedSourceError
from ta_watcher.providers.binance import BinanceDataSource
from ta_watcher.providers.coinbase import CoinbaseDataSource
from ta_watcher.registry import create_data_source, supported_sources


def test_supported_sources():
    assert supported_sources() == ["binance", "coinbase"]


def test_creates_each_exchange_with_its_own_default_budget():
    binance = create_data_source("binance")
    coinbase = create_data_source("Coinbase")

    assert isinstance(binance, BinanceDataSource)
    assert isinstance(coinbase, CoinbaseDataSource)
    assert binance.name == "binance" and coinbase.name == "coinbase"
    assert binance.transport.state.requests_per_minute == 1200
    assert binance.transport.state.max_retries == 3
    assert coinbase.transport.state.requests_per_minute == 20
    assert coinbase.transport.state.retry_delay == 20.0
    assert coinbase.transport.state.max_retries == 10
    assert binance.transport is not coinbase.transport


def test_missing_section_falls_back_to_that_exchanges_default():
    config = DataSourceConfig(
        primary="coinbase",
        binance=RateLimitConfig(requests_per_minute=600, retry_delay=2.0, max_retries=1),
    )

    binance = create_data_source("binance", config)
    coinbase = create_data_source("coinbase", config)

    assert (binance.transport.state.requests_per_minute, binance.transport.state.retry_delay) == (600, 2.0)
    assert coinbase.transport.state.requests_per_minute == 20


def test_default_state_is_not_shared_between_instances():
    a = create_data_source("binance")
    b = create_data_source("binance")
    assert a.transport.state is not b.transport.state


@pytest.mark.parametrize("name", ["", "kraken", None])
def test_unsupported_source(name):
    with pytest.raises(UnsupportedSourceError, match="unsupported data source type"):
        create_data_source(name)
