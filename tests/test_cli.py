import datetime
import textwrap

import pytest
from conftest import FakeDataSource, daily_klines

from ta_watcher import __version__, cli
from ta_watcher.config import FeishuConfig, NotifiersConfig, WechatConfig
from ta_watcher.notifiers.manager import build_notification_manager

CONFIG = """
assets:
  symbols: [BTC, ETH]
  timeframes: [1d]
watcher:
  log_dir: {log_dir}
"""


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(CONFIG.format(log_dir=tmp_path / "logs")), encoding="utf-8")
    return path


@pytest.fixture
def fake_source(monkeypatch):
    start = datetime.date(2024, 1, 1)
    source = FakeDataSource(klines={
        "BTCUSDT": daily_klines(start, 40, symbol="BTCUSDT"),
        "ETHUSDT": daily_klines(start, 40, symbol="ETHUSDT"),
    })
    monkeypatch.setattr(cli, "create_data_source", lambda name, config=None: source)
    monkeypatch.setattr(cli, "setup_logging", lambda watcher, log_file=True: None)
    return source


def test_version(capsys):
    assert cli.main(["--version"]) == 0
    assert capsys.readouterr().out.strip() == f"TA Watcher {__version__}"


def test_health_ok(config_path, capsys):
    assert cli.main(["--health", "-c", str(config_path)]) == 0
    assert capsys.readouterr().out.strip() == "healthy"


def test_health_missing_config(tmp_path, capsys):
    assert cli.main(["--health", "--config", str(tmp_path / "missing.yaml")]) == 1
    assert "unhealthy" in capsys.readouterr().err


def test_modes_are_mutually_exclusive():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["--daemon", "--single-run"])


def test_bad_config_exits_nonzero(tmp_path, capsys):
    path = tmp_path / "config.yaml"
    path.write_text("assets: {symbols: []}\n", encoding="utf-8")
    assert cli.main(["--single-run", "-c", str(path)]) == 1
    assert "assets.symbols" in capsys.readouterr().err


def test_single_run_end_to_end(config_path, fake_source):
    assert cli.main(["--single-run", "-c", str(config_path)]) == 0

    fetched = {symbol for symbol, _ in fake_source.calls}
    assert fetched == {"BTCUSDT", "ETHUSDT"}
    assert "ETHBTC" in fake_source.validated


def test_single_run_fails_when_every_unit_fails(config_path, fake_source):
    fake_source.failing = {"BTCUSDT", "ETHUSDT"}
    assert cli.main(["--single-run", "-c", str(config_path)]) == 1


def test_single_run_fails_when_no_asset_is_valid(config_path, fake_source):
    fake_source.valid = set()
    assert cli.main(["--single-run", "-c", str(config_path)]) == 1


def test_notification_manager_registers_enabled_channels_only():
    config = NotifiersConfig(
        feishu=FeishuConfig(enabled=True, webhook_url="https://hook"),
        wechat=WechatConfig(enabled=False, webhook_url="https://qy"),
    )
    manager = build_notification_manager(config)
    try:
        assert manager.notifier_names() == ["feishu"]
        assert manager.enabled_count() == 1
    finally:
        manager.close()
