from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shockbot.config import AppConfig, SafetyConfig
from shockbot.errors import PersistenceFailure
from shockbot.gating.safety_governor import SafetyGovernor, max_drawdown_pct
from shockbot.storage.config_store import ConfigStore
from shockbot.storage.db import get_connection, init_db
from shockbot.storage.journal import Journal
from shockbot.storage.models import TradeRecord
from shockbot.strategy.contracts import RiskLimits, Severity, SystemState, TradingMode

NOW = datetime(2026, 3, 3, 9, 40, tzinfo=timezone.utc)


class _RecordingAlerts:
    def __init__(self) -> None:
        self.events = []

    def notify_safety_event(self, event) -> bool:
        self.events.append(event)
        return True


def _governor(tmp_path, config: AppConfig | None = None, alerts=None) -> SafetyGovernor:
    conn = get_connection(tmp_path / "governor.db")
    init_db(conn)
    journal = Journal(conn)
    config = config or AppConfig()
    return SafetyGovernor(journal, ConfigStore(journal, config), config, alerts=alerts)


def _state(**overrides) -> SystemState:
    values = dict(
        total_capital=100000.0,
        available_capital=100000.0,
        today_pnl=0.0,
        today_trades=0,
        consecutive_losses=0,
        active_positions=0,
    )
    values.update(overrides)
    return SystemState(**values)


def _closed_trade(index: int, pnl: float, when: datetime) -> TradeRecord:
    return TradeRecord(
        trade_id=f"PAPER-{index}",
        setup_id=f"SETUP-{index}",
        cycle_id=f"2026-01-{index + 1:02d}",
        mode="PAPER",
        symbol="TCS",
        option_symbol="TCS-CE",
        instrument_direction="CALL",
        strike=4000.0,
        entry_price=100.0,
        entry_time=when - timedelta(hours=1),
        lots=10,
        capital_used=1000.0,
        stop_loss=85.0,
        raw_confidence=0.7,
        calibrated_confidence=0.7,
        status="CLOSED",
        exit_price=100.0 + pnl / 10,
        exit_time=when,
        exit_reason="NEXT_DAY_EXIT",
        pnl=pnl,
        pnl_pct=pnl / 10,
    )


def test_clean_state_passes(tmp_path) -> None:
    governor = _governor(tmp_path)

    check = governor.check_trade_allowed(_state(), RiskLimits(), 500.0, NOW)

    assert check.passed
    assert governor.journal.safety_events() == []


def test_five_percent_daily_loss_forces_paper_and_kill_switch(tmp_path) -> None:
    governor = _governor(tmp_path)
    governor.config_store.set_trading_mode(TradingMode.REAL, updated_by="operator", now=NOW)

    check = governor.check_trade_allowed(_state(today_pnl=-5000.0), RiskLimits(), 500.0, NOW)

    assert not check.passed
    assert check.event_type == "DAILY_LOSS_LIMIT_BREACH"
    assert check.severity == Severity.CRITICAL
    assert check.action_taken == "DISABLED_REAL_MODE"
    assert governor.config_store.trading_mode() == TradingMode.PAPER
    assert governor.kill_switch_active()
    event_types = [event.event_type for event in governor.journal.safety_events()]
    assert event_types == ["DAILY_LOSS_LIMIT_BREACH", "AUTO_KILL_SWITCH_TRIGGERED"]


def test_daily_loss_without_auto_kill_switch(tmp_path) -> None:
    config = AppConfig(safety=SafetyConfig(kill_switch_on_daily_loss=False))
    governor = _governor(tmp_path, config)

    check = governor.check_trade_allowed(_state(today_pnl=-2500.0), RiskLimits(), 500.0, NOW)

    assert check.action_taken == "DISABLED_REAL_MODE"
    assert not governor.kill_switch_active()


def test_checks_run_in_order(tmp_path) -> None:
    governor = _governor(tmp_path)
    limits = RiskLimits()

    too_many = governor.check_trade_allowed(
        _state(today_trades=5, consecutive_losses=4, venue_healthy=False), limits, 5000.0, NOW
    )
    streak = governor.check_trade_allowed(_state(consecutive_losses=3), limits, 5000.0, NOW)
    too_risky = governor.check_trade_allowed(_state(venue_healthy=False), limits, 1500.0, NOW)
    venue_down = governor.check_trade_allowed(_state(venue_healthy=False, market_data_healthy=False), limits, 500.0, NOW)
    bad_data = governor.check_trade_allowed(_state(market_data_healthy=False), limits, 500.0, NOW)

    assert too_many.event_type == "MAX_TRADES_EXCEEDED"
    assert streak.event_type == "CONSECUTIVE_LOSS_THROTTLE"
    assert streak.action_taken == "THROTTLED_TRADING"
    assert too_risky.event_type == "PER_TRADE_RISK_EXCEEDED"
    assert venue_down.event_type == "API_HEALTH_FAILURE"
    assert venue_down.action_taken == "HALTED_NEW_TRADES"
    assert bad_data.event_type == "DATA_INTEGRITY_ISSUE"
    assert bad_data.action_taken == "SKIPPED_DECISION"


def test_kill_switch_blocks_first(tmp_path) -> None:
    governor = _governor(tmp_path)
    governor.activate_kill_switch("operator", "manual stop", NOW)

    check = governor.check_trade_allowed(_state(today_pnl=-9000.0), RiskLimits(), 500.0, NOW)

    assert check.event_type == "EMERGENCY_STOP_ACTIVE"
    assert check.action_taken == "BLOCKED_TRADE"


def test_kill_switch_round_trip_and_alerts(tmp_path) -> None:
    alerts = _RecordingAlerts()
    governor = _governor(tmp_path, alerts=alerts)
    governor.config_store.set_trading_mode(TradingMode.REAL, updated_by="operator", now=NOW)

    governor.activate_kill_switch("operator", "manual stop", NOW)
    assert governor.kill_switch_active()
    assert governor.config_store.trading_mode() == TradingMode.PAPER
    assert [event.event_type for event in alerts.events] == ["KILL_SWITCH_ACTIVATED"]

    governor.deactivate_kill_switch("operator", "resolved", NOW + timedelta(minutes=5))
    assert not governor.kill_switch_active()
    assert governor.config_store.trading_mode() == TradingMode.PAPER
    assert len(alerts.events) == 1


def test_unreadable_kill_switch_counts_as_active(tmp_path) -> None:
    governor = _governor(tmp_path)

    def _boom():
        raise PersistenceFailure("locked")

    governor.journal.latest_kill_switch = _boom  # type: ignore[method-assign]

    assert governor.kill_switch_active()


def test_black_swan_flattens_and_stops(tmp_path) -> None:
    governor = _governor(tmp_path)
    flattened = governor.handle_market_black_swan("Index gapped 8%", NOW, flatten=lambda: 3)

    assert flattened == 3
    assert governor.kill_switch_active()
    types = [event.event_type for event in governor.journal.safety_events(severity="CRITICAL")]
    assert types[0] == "MARKET_BLACK_SWAN"
    assert "KILL_SWITCH_ACTIVATED" in types


def test_max_drawdown_on_cumulative_pnl() -> None:
    assert max_drawdown_pct([]) == 0.0
    assert max_drawdown_pct([1000.0, -500.0, 200.0]) == pytest.approx(50.0)
    # Losses before any profit are measured against a peak floor of 1.
    assert max_drawdown_pct([-2.0]) == pytest.approx(200.0)


def test_graduation_blocked_when_paper_profit_is_given_back(tmp_path) -> None:
    governor = _governor(tmp_path)
    start = NOW - timedelta(days=40)
    pnls = [1000.0] + [-45.0] * 20 + [10.0] * 4
    for index, pnl in enumerate(pnls):
        governor.journal.record_trade(_closed_trade(index, pnl, start + timedelta(days=index)))

    result = governor.check_graduation(NOW)

    assert not result.can_enable_real
    assert result.metrics["total_pnl"] == pytest.approx(140.0)
    assert result.metrics["max_drawdown_pct"] == pytest.approx(90.0)
    assert result.reasons == ["Max drawdown too high: 90.00% (limit: 10%)"]


def test_graduation_requires_history(tmp_path) -> None:
    governor = _governor(tmp_path)

    result = governor.check_graduation(NOW)

    assert not result.can_enable_real
    assert result.reasons == ["Minimum 20 paper trades required (current: 0)"]


def test_graduation_passes_with_profitable_clean_history(tmp_path) -> None:
    governor = _governor(tmp_path)
    start = NOW - timedelta(days=40)
    for index in range(25):
        pnl = -50.0 if index % 5 == 4 else 300.0
        governor.journal.record_trade(_closed_trade(index, pnl, start + timedelta(days=index)))

    result = governor.check_graduation(NOW)

    assert result.can_enable_real
    assert result.metrics["paper_trades"] == 25
    assert result.metrics["total_pnl"] > 0


def test_graduation_blocked_by_recent_critical_event(tmp_path) -> None:
    governor = _governor(tmp_path)
    start = NOW - timedelta(days=40)
    for index in range(25):
        governor.journal.record_trade(_closed_trade(index, 100.0, start + timedelta(days=index)))
    governor.log_safety_event("API_HEALTH_FAILURE", Severity.CRITICAL, "broker down", "HALTED_NEW_TRADES", NOW - timedelta(days=2))

    result = governor.check_graduation(NOW)

    assert not result.can_enable_real
    assert result.reasons == ["Critical safety events in last 7 days must be resolved"]


def test_restart_with_open_positions_is_logged(tmp_path) -> None:
    alerts = _RecordingAlerts()
    governor = _governor(tmp_path, alerts=alerts)

    governor.handle_infrastructure_restart(NOW, 2)

    events = governor.journal.safety_events(severity="CRITICAL")
    assert [event.event_type for event in events] == ["INFRASTRUCTURE_CRASH"]
    assert events[0].description == "Restart detected with 2 open positions"
    assert [event.event_type for event in alerts.events] == ["INFRASTRUCTURE_CRASH"]
