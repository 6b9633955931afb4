"""Command-line entry point: ``ta-watcher``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from ta_watcher import __version__
from ta_watcher.assets import AssetValidator
from ta_watcher.config import Config, load_config, setup_logging
from ta_watcher.errors import AssetValidationError, ConfigError, NotifierError
from ta_watcher.notifiers.manager import NotificationManager, build_notification_manager
from ta_watcher.providers.base import DataSource
from ta_watcher.registry import create_data_source
from ta_watcher.strategy import create_strategy
from ta_watcher.watcher import UnitOutcome, Watcher

logger = logging.getLogger(__name__)

APP_NAME = "TA Watcher"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ta-watcher",
        description="Watch exchange klines, run technical-analysis strategies and send alerts.",
    )
    parser.add_argument("-c", "--config", default="config.yaml", help="path to the YAML config (default: %(default)s)")
    parser.add_argument("--env-file", default=None, help="dotenv file to load before expanding ${VAR} references")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--version", action="store_true", help="print the version and exit")
    mode.add_argument("--health", action="store_true", help="check that the config loads and exit")
    mode.add_argument("--daemon", action="store_true", help="run continuously (default)")
    mode.add_argument("--single-run", action="store_true", help="run one cycle and exit")
    parser.add_argument(
        "--timeout", type=float, default=None,
        help="single-run timeout in seconds (default: watcher.single_run_timeout)",
    )
    return parser


async def build_watcher(config: Config, data_source: DataSource, manager: NotificationManager) -> Watcher:
    """Validate assets on *data_source* and assemble a watcher for what survived."""
    validation = await AssetValidator(data_source, config.assets).validate()
    strategies = [create_strategy(s.name, s.params) for s in config.strategies]
    w = config.watcher
    return Watcher(
        data_source,
        strategies,
        manager,
        validation.monitoring_symbols(),
        validation.timeframes,
        interval=w.interval,
        max_workers=w.max_workers,
        buffer_size=w.buffer_size,
        derived_pairs=validation.derived_pairs(),
        bridge=validation.base_currency,
        notification_cooldown=w.notification_cooldown,
        status_interval=w.status_interval,
    )


def _close_manager(manager: NotificationManager) -> None:
    try:
        manager.close()
    except NotifierError as exc:
        logger.warning("%s", exc)


async def run_daemon(config: Config) -> int:
    manager = build_notification_manager(config.notifiers)
    try:
        async with create_data_source(config.datasource.primary, config.datasource) as source:
            try:
                watcher = await build_watcher(config, source, manager)
            except AssetValidationError as exc:
                logger.error("asset validation failed: %s", exc)
                return 1

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(sig, watcher.stop)

            await watcher.start()
    finally:
        _close_manager(manager)
    return 0


async def run_single(config: Config, timeout: float | None = None) -> int:
    timeout = config.watcher.single_run_timeout if timeout is None else timeout
    manager = build_notification_manager(config.notifiers)
    try:
        async with create_data_source(config.datasource.primary, config.datasource) as source:
            try:
                watcher = await build_watcher(config, source, manager)
            except AssetValidationError as exc:
                logger.error("asset validation failed: %s", exc)
                return 1
            try:
                stats = await watcher.run_once(timeout=timeout)
            except asyncio.TimeoutError:
                logger.error("single run timed out after %.0fs", timeout)
                return 1
    finally:
        _close_manager(manager)

    if stats.units and stats.count(UnitOutcome.FAILED) == stats.units:
        logger.error("every unit failed in single run")
        return 1
    return 0


def health_check(config_path: str, env_file: str | None = None) -> int:
    try:
        load_config(config_path, env_file)
    except ConfigError as exc:
        print(f"unhealthy: {exc}", file=sys.stderr)
        return 1
    print("healthy")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"{APP_NAME} {__version__}")
        return 0
    if args.health:
        return health_check(args.config, args.env_file)

    try:
        config = load_config(args.config, args.env_file)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    setup_logging(config.watcher)
    logger.info("%s %s starting (%s)", APP_NAME, __version__, "single run" if args.single_run else "daemon")

    try:
        if args.single_run:
            return asyncio.run(run_single(config, args.timeout))
        return asyncio.run(run_daemon(config))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
