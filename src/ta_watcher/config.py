"""
Configuration management for ta-watcher.

This module handles:
- Loading the YAML configuration file
- ``${VAR}`` / ``${VAR:default}`` environment expansion (with ``.env`` support)
- Duration strings such as ``500ms``, ``20s``, ``5m``, ``1h30m``
- Validation before any component sees the configuration
- Logging setup
"""

from __future__ import annotations

import datetime
import logging
import os
import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from ta_watcher.errors import ConfigError
from ta_watcher.models import Timeframe
from ta_watcher.registry import supported_sources

logger = logging.getLogger(__name__)

_ENV_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}

LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

DEFAULT_EMAIL_SUBJECT = "TA Watcher Alert - {asset} {level}"


@dataclass(slots=True, frozen=True)
class RateLimitConfig:
    """Per-exchange request budget."""

    requests_per_minute: int
    retry_delay: float
    max_retries: int


@dataclass(slots=True, frozen=True)
class DataSourceConfig:
    """Data source selection. A ``None`` rate limit means the exchange default."""

    primary: str = "binance"
    timeout: float = 30.0
    binance: RateLimitConfig | None = None
    coinbase: RateLimitConfig | None = None


@dataclass(slots=True, frozen=True)
class WatcherConfig:
    """Scheduler settings. Durations are in seconds."""

    interval: float = 300.0
    max_workers: int = 10
    buffer_size: int = 100
    log_level: str = "info"
    log_dir: str = "logs"
    notification_cooldown: float = 3600.0
    status_interval: float = 300.0
    single_run_timeout: float = 3600.0


@dataclass(slots=True, frozen=True)
class SMTPConfig:
    host: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    tls: bool = True


@dataclass(slots=True, frozen=True)
class EmailConfig:
    enabled: bool = False
    smtp: SMTPConfig = field(default_factory=SMTPConfig)
    from_addr: str = ""
    to: tuple[str, ...] = ()
    subject: str = DEFAULT_EMAIL_SUBJECT
    template: str = ""


@dataclass(slots=True, frozen=True)
class FeishuConfig:
    enabled: bool = False
    webhook_url: str = ""
    secret: str = ""
    template: str = ""


@dataclass(slots=True, frozen=True)
class WechatConfig:
    enabled: bool = False
    webhook_url: str = ""
    template: str = ""


@dataclass(slots=True, frozen=True)
class FilterConfig:
    """Notification filter. Empty ``types``/``assets`` allow everything."""

    min_level: str = "info"
    types: tuple[str, ...] = ()
    assets: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class NotifiersConfig:
    email: EmailConfig = field(default_factory=EmailConfig)
    feishu: FeishuConfig = field(default_factory=FeishuConfig)
    wechat: WechatConfig = field(default_factory=WechatConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)


@dataclass(slots=True, frozen=True)
class AssetsConfig:
    """Assets to monitor.

    ``symbols`` are base assets (``BTC``) quoted against ``base_currency``.
    """

    symbols: tuple[str, ...] = ()
    timeframes: tuple[str, ...] = ("1d",)
    base_currency: str = "USDT"
    max_cross_pairs: int = 10


@dataclass(slots=True, frozen=True)
class StrategyConfig:
    name: str
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Config:
    """Root configuration value, passed explicitly to every component."""

    datasource: DataSourceConfig = field(default_factory=DataSourceConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    notifiers: NotifiersConfig = field(default_factory=NotifiersConfig)
    assets: AssetsConfig = field(default_factory=AssetsConfig)
    strategies: tuple[StrategyConfig, ...] = (StrategyConfig("rsi"),)

    def validate(self) -> None:
        """Raise :class:`~ta_watcher.errors.ConfigError` listing every problem found."""
        errors: list[str] = []

        ds = self.datasource
        if ds.primary not in supported_sources():
            errors.append(f"datasource.primary must be one of {supported_sources()}, got {ds.primary!r}")
        if ds.timeout <= 0:
            errors.append("datasource.timeout must be positive")
        for name, rl in (("binance", ds.binance), ("coinbase", ds.coinbase)):
            if rl is None:
                continue
            if rl.requests_per_minute <= 0:
                errors.append(f"datasource.{name}.rate_limit.requests_per_minute must be positive")
            if rl.retry_delay < 0:
                errors.append(f"datasource.{name}.rate_limit.retry_delay must be >= 0")
            if rl.max_retries < 0:
                errors.append(f"datasource.{name}.rate_limit.max_retries must be >= 0")

        w = self.watcher
        if w.interval <= 0:
            errors.append("watcher.interval must be positive")
        if w.max_workers <= 0:
            errors.append("watcher.max_workers must be positive")
        if w.buffer_size <= 0:
            errors.append("watcher.buffer_size must be positive")
        if w.log_level.lower() not in LOG_LEVELS:
            errors.append(f"watcher.log_level must be one of {sorted(LOG_LEVELS)}, got {w.log_level!r}")
        if w.notification_cooldown < 0:
            errors.append("watcher.notification_cooldown must be >= 0")
        if w.status_interval <= 0:
            errors.append("watcher.status_interval must be positive")
        if w.single_run_timeout <= 0:
            errors.append("watcher.single_run_timeout must be positive")

        email = self.notifiers.email
        if email.enabled:
            if not email.smtp.host:
                errors.append("notifiers.email.smtp.host is required")
            if not 1 <= email.smtp.port <= 65535:
                errors.append("notifiers.email.smtp.port must be between 1 and 65535")
            if not email.smtp.username:
                errors.append("notifiers.email.smtp.username is required")
            if not email.smtp.password:
                errors.append("notifiers.email.smtp.password is required")
            if not email.from_addr:
                errors.append("notifiers.email.from is required")
            if not email.to:
                errors.append("notifiers.email.to needs at least one recipient")
        if self.notifiers.feishu.enabled and not self.notifiers.feishu.webhook_url:
            errors.append("notifiers.feishu.webhook_url is required")
        if self.notifiers.wechat.enabled and not self.notifiers.wechat.webhook_url:
            errors.append("notifiers.wechat.webhook_url is required")
        if self.notifiers.filter.min_level.lower() not in ("info", "warning", "warn", "error", "critical"):
            errors.append(f"notifiers.filter.min_level is invalid: {self.notifiers.filter.min_level!r}")

        a = self.assets
        if not a.symbols:
            errors.append("assets.symbols needs at least one symbol")
        if not a.timeframes:
            errors.append("assets.timeframes needs at least one timeframe")
        for tf in a.timeframes:
            try:
                Timeframe.parse(tf)
            except ValueError:
                errors.append(f"assets.timeframes: unsupported timeframe {tf!r}")
        if not a.base_currency:
            errors.append("assets.base_currency is required")
        if a.max_cross_pairs < 0:
            errors.append("assets.max_cross_pairs must be >= 0")

        if not self.strategies:
            errors.append("strategies needs at least one entry")

        if errors:
            raise ConfigError(f"configuration validation failed: {'; '.join(errors)}")
        logger.debug("configuration validation passed")


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------


def expand_env(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:default}`` with values from the environment.

    Unset variables without a default expand to the empty string.
    """

    def _sub(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        env = os.environ.get(name)
        if env:
            return env
        return default if default is not None else ""

    return _ENV_RE.sub(_sub, value)


def _expand_tree(node: Any) -> Any:
    if isinstance(node, str):
        return expand_env(node)
    if isinstance(node, list):
        return [_expand_tree(item) for item in node]
    if isinstance(node, dict):
        return {key: _expand_tree(item) for key, item in node.items()}
    return node


def parse_duration(value: Any) -> float:
    """Return *value* in seconds. Numbers are taken as seconds already."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    text = str(value).strip()
    if not text:
        raise ConfigError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    pos, total = 0, 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total


def _as_int(value: Any, where: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where} must be an integer, got {value!r}") from None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_list(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(str(v).strip() for v in value if str(v).strip())


def _section(data: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _rate_limit(data: Mapping[str, Any], where: str) -> RateLimitConfig | None:
    section = data.get("rate_limit")
    if not section:
        return None
    return RateLimitConfig(
        requests_per_minute=_as_int(section.get("requests_per_minute", 0), f"{where}.requests_per_minute"),
        retry_delay=parse_duration(section.get("retry_delay", 0)),
        max_retries=_as_int(section.get("max_retries", 0), f"{where}.max_retries"),
    )


def config_from_dict(data: Mapping[str, Any]) -> Config:
    """Build a :class:`Config` from an already env-expanded mapping."""
    ds = _section(data, "datasource")
    w = _section(data, "watcher")
    n = _section(data, "notifiers")
    a = _section(data, "assets")

    email = _section(n, "email")
    smtp = _section(email, "smtp")
    feishu = _section(n, "feishu")
    wechat = _section(n, "wechat")
    flt = _section(n, "filter")
    defaults = WatcherConfig()

    strategies = tuple(
        StrategyConfig(name=str(s["name"]), params=dict(s.get("params") or {}))
        if isinstance(s, dict) else StrategyConfig(name=str(s))
        for s in (data.get("strategies") or ["rsi"])
    )

    return Config(
        datasource=DataSourceConfig(
            primary=str(ds.get("primary", "binance")).lower(),
            timeout=parse_duration(ds.get("timeout", 30)),
            binance=_rate_limit(_section(ds, "binance"), "datasource.binance.rate_limit"),
            coinbase=_rate_limit(_section(ds, "coinbase"), "datasource.coinbase.rate_limit"),
        ),
        watcher=WatcherConfig(
            interval=parse_duration(w.get("interval", defaults.interval)),
            max_workers=_as_int(w.get("max_workers", defaults.max_workers), "watcher.max_workers"),
            buffer_size=_as_int(w.get("buffer_size", defaults.buffer_size), "watcher.buffer_size"),
            log_level=str(w.get("log_level", defaults.log_level)).lower(),
            log_dir=str(w.get("log_dir", defaults.log_dir)),
            notification_cooldown=parse_duration(
                w.get("notification_cooldown", defaults.notification_cooldown)
            ),
            status_interval=parse_duration(w.get("status_interval", defaults.status_interval)),
            single_run_timeout=parse_duration(
                w.get("single_run_timeout", defaults.single_run_timeout)
            ),
        ),
        notifiers=NotifiersConfig(
            email=EmailConfig(
                enabled=_as_bool(email.get("enabled", False)),
                smtp=SMTPConfig(
                    host=str(smtp.get("host") or ""),
                    port=_as_int(smtp.get("port") or 587, "notifiers.email.smtp.port"),
                    username=str(smtp.get("username") or ""),
                    password=str(smtp.get("password") or ""),
                    tls=_as_bool(smtp.get("tls", True)),
                ),
                from_addr=str(email.get("from") or ""),
                to=_as_list(email.get("to")),
                subject=str(email.get("subject") or DEFAULT_EMAIL_SUBJECT),
                template=str(email.get("template") or ""),
            ),
            feishu=FeishuConfig(
                enabled=_as_bool(feishu.get("enabled", False)),
                webhook_url=str(feishu.get("webhook_url") or ""),
                secret=str(feishu.get("secret") or ""),
                template=str(feishu.get("template") or ""),
            ),
            wechat=WechatConfig(
                enabled=_as_bool(wechat.get("enabled", False)),
                webhook_url=str(wechat.get("webhook_url") or ""),
                template=str(wechat.get("template") or ""),
            ),
            filter=FilterConfig(
                min_level=str(flt.get("min_level", "info")).lower(),
                types=_as_list(flt.get("types")),
                assets=_as_list(flt.get("assets")),
            ),
        ),
        assets=AssetsConfig(
            symbols=tuple(s.upper() for s in _as_list(a.get("symbols"))),
            timeframes=_as_list(a.get("timeframes")) or ("1d",),
            base_currency=str(a.get("base_currency") or "USDT").upper(),
            max_cross_pairs=_as_int(a.get("max_cross_pairs", 10), "assets.max_cross_pairs"),
        ),
        strategies=strategies,
    )


def load_config(path: str | os.PathLike[str], env_file: str | os.PathLike[str] | None = None) -> Config:
    """Load, expand and validate the YAML configuration at *path*.

    A ``.env`` file (*env_file*, or ``.env`` next to the config) is loaded
    first without overriding variables already set in the environment.
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"config file not found: {config_path}")

    dotenv_path = Path(env_file) if env_file else config_path.parent / ".env"
    if dotenv_path.is_file():
        load_dotenv(dotenv_path, override=False)

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    config = config_from_dict(_expand_tree(raw))
    config.validate()
    logger.info("loaded configuration from %s", config_path)
    return config


def setup_logging(watcher: WatcherConfig, log_file: bool = True) -> Path | None:
    """Configure the root logger from *watcher* settings.

    Logs go to stdout and, when *log_file* is true, to a timestamped file in
    ``watcher.log_dir``. Returns the log file path, if any.
    """
    level = LOG_LEVELS.get(watcher.log_level.lower(), logging.INFO)
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    path: Path | None = None
    if log_file:
        log_dir = Path(watcher.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        path = log_dir / f"ta-watcher_{stamp}.log"
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logger.info("logging configured at level %s", watcher.log_level)
    return path
