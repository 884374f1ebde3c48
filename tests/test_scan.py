from __future__ import annotations

from datetime import datetime, timedelta, timezone

from shockbot.config import AppConfig, UniverseConfig
from shockbot.data.candles import Candle
from shockbot.data.market_data import SqliteMarketDataStore
from shockbot.engine.scan import ScanEngine
from shockbot.gating.safety_governor import SafetyGovernor
from shockbot.storage.config_store import ConfigStore
from shockbot.storage.db import get_connection, init_db
from shockbot.storage.journal import Journal
from shockbot.strategy.contracts import SetupState, ShockDirection
from shockbot.strategy.state_machine import SetupStateMachine

BASE = datetime(2026, 1, 20, tzinfo=timezone.utc)
SHOCK_DAY = datetime(2026, 2, 9, tzinfo=timezone.utc)
# 18:30 in Kolkata
EVENING = timedelta(hours=13)


def _history() -> list[Candle]:
    candles = [
        Candle(BASE + timedelta(days=index), open=100.0, high=102.0, low=99.0, close=101.0, volume=1000.0)
        for index in range(20)
    ]
    candles.append(Candle(SHOCK_DAY, open=110.0, high=111.0, low=99.0, close=100.0, volume=5000.0))
    return candles


def _engine(tmp_path, symbols: list[str] | None = None) -> tuple[ScanEngine, SqliteMarketDataStore]:
    conn = get_connection(tmp_path / "scan.db")
    init_db(conn)
    journal = Journal(conn)
    market_data = SqliteMarketDataStore(conn)
    config = AppConfig(universe=UniverseConfig(symbols=symbols or ["RELIANCE"]))
    governor = SafetyGovernor(journal, ConfigStore(journal, config), config)
    engine = ScanEngine(
        config=config,
        journal=journal,
        market_data=market_data,
        state_machine=SetupStateMachine(journal),
        governor=governor,
    )
    market_data.upsert_candles("RELIANCE", "D1", _history())
    return engine, market_data


def test_scan_waits_for_evening(tmp_path) -> None:
    engine, _ = _engine(tmp_path)

    early = engine.run_scan(SHOCK_DAY + timedelta(hours=10))

    assert early.status == "NOT_ALLOWED"
    assert early.new_setups == []
    assert engine.run_scan(SHOCK_DAY + timedelta(hours=10), force=True).status == "OK"


def test_shock_creates_setup_in_shock_detected(tmp_path) -> None:
    engine, _ = _engine(tmp_path)

    result = engine.run_scan(SHOCK_DAY + EVENING)

    assert result.status == "OK"
    assert result.transitions == {}
    assert len(result.new_setups) == 1
    setup = result.new_setups[0]
    assert setup.state == SetupState.SHOCK_DETECTED
    assert setup.direction == ShockDirection.DOWN
    assert setup.shock_low == 99.0
    assert setup.volume_multiple == 5.0

    transitions = engine.journal.list_transitions(setup.setup_id)
    assert [(t.previous_state, t.new_state) for t in transitions] == [("IDLE", "SHOCK_DETECTED")]
    assert transitions[0].reason == "RED shock candle: 5.00x volume, 83% body"
    events = engine.journal.safety_events()
    assert [event.event_type for event in events] == ["SHOCK_CANDLE_DETECTED"]
    assert events[0].metadata["setup_id"] == setup.setup_id


def test_second_shock_ignored_while_setup_active(tmp_path) -> None:
    engine, _ = _engine(tmp_path)
    first = engine.run_scan(SHOCK_DAY + EVENING).new_setups[0]

    again = engine.run_scan(SHOCK_DAY + EVENING + timedelta(minutes=30))

    assert again.new_setups == []
    assert engine.journal.active_setup_for_symbol("RELIANCE").setup_id == first.setup_id


def test_next_day_scan_moves_setup_into_digestion(tmp_path) -> None:
    engine, market_data = _engine(tmp_path)
    setup = engine.run_scan(SHOCK_DAY + EVENING).new_setups[0]
    tuesday = Candle(SHOCK_DAY + timedelta(days=1), open=100.0, high=105.0, low=99.0, close=104.0, volume=800.0)
    market_data.upsert_candles("RELIANCE", "D1", [tuesday])

    result = engine.run_scan(SHOCK_DAY + timedelta(days=1) + EVENING)

    assert result.new_setups == []
    assert result.transitions == {setup.setup_id: ["DIGESTION"]}
    stored = engine.journal.get_setup(setup.setup_id)
    assert stored.state == SetupState.DIGESTION
    assert stored.days_since_shock == 2
    assert market_data.latest_feature_snapshot(setup.setup_id) is not None


def test_expanding_volume_after_shock_resets_setup(tmp_path) -> None:
    engine, market_data = _engine(tmp_path)
    setup = engine.run_scan(SHOCK_DAY + EVENING).new_setups[0]
    heavy = Candle(SHOCK_DAY + timedelta(days=1), open=100.0, high=101.0, low=95.0, close=96.0, volume=4000.0)
    market_data.upsert_candles("RELIANCE", "D1", [heavy])

    result = engine.run_scan(SHOCK_DAY + timedelta(days=1) + EVENING)

    assert result.transitions == {setup.setup_id: ["DIGESTION", "FAILED_RESET", "IDLE"]}
    assert engine.journal.active_setup_for_symbol("RELIANCE") is None
    assert engine.journal.get_setup(setup.setup_id).state == SetupState.IDLE


def test_symbol_without_candles_is_reported(tmp_path) -> None:
    engine, _ = _engine(tmp_path, symbols=["RELIANCE", "TCS"])

    result = engine.run_scan(SHOCK_DAY + EVENING)

    assert len(result.new_setups) == 1
    assert result.errors == {"TCS": "No candles for TCS"}
