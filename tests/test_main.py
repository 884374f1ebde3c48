from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

import main as main_module
from main import Runtime, build_alerts, resolve_db_path
from shockbot.config import AlertsConfig, AppConfig
from shockbot.strategy.contracts import TradingMode

NOW = datetime(2026, 3, 3, 9, 40, tzinfo=timezone.utc)


def test_resolve_db_path_defaults_and_env(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("SQLITE_PATH", raising=False)
    assert resolve_db_path(tmp_path) == str(tmp_path / "data" / "shockbot.db")

    monkeypatch.setenv("SQLITE_PATH", "custom/ledger.db")
    assert resolve_db_path(tmp_path) == str(tmp_path / "custom" / "ledger.db")

    absolute = tmp_path / "abs.db"
    monkeypatch.setenv("SQLITE_PATH", str(absolute))
    assert resolve_db_path(Path("/elsewhere")) == str(absolute)


def test_build_alerts_prefers_environment(monkeypatch) -> None:
    monkeypatch.setenv("ALERT_DISCORD_WEBHOOK", "https://discord.example/env")
    monkeypatch.setenv("ALERT_COOLDOWN_SECONDS", "5")
    config = AppConfig(alerts=AlertsConfig(enabled=True, discord_webhook="https://discord.example/yaml"))

    dispatcher = build_alerts(config)

    assert dispatcher.config.discord_webhook == "https://discord.example/env"
    assert dispatcher.config.cooldown_seconds == 5
    assert dispatcher.config.enabled


def test_kill_switch_commands_print_status(tmp_path, capsys) -> None:
    runtime = Runtime(AppConfig(), str(tmp_path / "cli.db"))
    try:
        runtime.config_store.set_trading_mode(TradingMode.REAL, updated_by="operator", now=NOW)
        main_module.run_kill_switch(runtime, "activate", "gap down", NOW)
        activated = json.loads(capsys.readouterr().out)
        main_module.run_kill_switch(runtime, "status", "", NOW)
        status = json.loads(capsys.readouterr().out)
    finally:
        runtime.close()

    assert activated["active"]
    assert activated["reason"] == "gap down"
    assert activated["trading_mode"] == "PAPER"
    assert status["active"]


def test_import_candles_from_csv(tmp_path) -> None:
    csv_path = tmp_path / "infy.csv"
    csv_path.write_text(
        "date,open,high,low,close,volume\n"
        "2026-03-02,100,102,99,101,1000\n"
        "2026-03-03,101,103,100,102,1200\n",
        encoding="utf-8",
    )
    runtime = Runtime(AppConfig(), str(tmp_path / "cli.db"))
    try:
        count = main_module.run_import_candles(runtime, str(csv_path), "infy")
        candles = runtime.market_data.fetch_candles("INFY", "D1", 10)
    finally:
        runtime.close()

    assert count == 2
    assert [candle.close for candle in candles] == [101.0, 102.0]


def test_import_candles_requires_symbol(tmp_path) -> None:
    runtime = Runtime(AppConfig(), str(tmp_path / "cli.db"))
    try:
        with pytest.raises(SystemExit):
            main_module.run_import_candles(runtime, "missing.csv", None)
    finally:
        runtime.close()
