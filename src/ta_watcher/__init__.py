"""ta-watcher: watch exchange klines, run TA strategies and fan out alerts."""

__version__ = "1.0.0"

from .models import Kline, Timeframe  # noqa: E402
from .registry import create_data_source, supported_sources  # noqa: E402

__all__ = ["Kline", "Timeframe", "create_data_source", "supported_sources"]
