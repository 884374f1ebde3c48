from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shockbot.config import AppConfig
from shockbot.data.market_data import OptionQuote, SqliteMarketDataStore
from shockbot.engine.positions import PositionMonitor
from shockbot.errors import VenueError
from shockbot.execution.venue import OrderRequest, PaperVenue, build_venue
from shockbot.storage.db import get_connection, init_db
from shockbot.storage.journal import Journal
from shockbot.storage.models import TradeRecord
from shockbot.strategy.calibration import CalibrationEngine
from shockbot.strategy.contracts import (
    ExitReason,
    InstrumentDirection,
    Setup,
    SetupState,
    ShockDirection,
    TradingMode,
)
from shockbot.strategy.learning import LearningEngine
from shockbot.strategy.state_machine import SetupStateMachine

# 15:10 in Kolkata
ENTRY = datetime(2026, 3, 3, 9, 40, tzinfo=timezone.utc)
OPTION = "RELIANCE-2500-CE"


def _monitor(tmp_path) -> tuple[PositionMonitor, SqliteMarketDataStore]:
    conn = get_connection(tmp_path / "positions.db")
    init_db(conn)
    journal = Journal(conn)
    market_data = SqliteMarketDataStore(conn)
    config = AppConfig()
    monitor = PositionMonitor(
        config=config,
        journal=journal,
        venue_for=lambda mode: build_venue(mode, config.execution, market_data),
        state_machine=SetupStateMachine(journal),
        calibration=CalibrationEngine(journal, config.calibration),
        learning=LearningEngine(journal, config.learning),
    )
    return monitor, market_data


def _quote(market_data: SqliteMarketDataStore, price: float) -> None:
    market_data.upsert_option_quote(
        "RELIANCE",
        OptionQuote(OPTION, InstrumentDirection.CALL, 2500.0, price, 50),
        ENTRY,
    )


def _open_trade(journal: Journal, trade_id: str = "PAPER-1", mode: str = "PAPER") -> TradeRecord:
    setup_id = f"SETUP-{trade_id}"
    journal.create_setup(
        Setup(
            setup_id=setup_id,
            symbol=f"SYM-{trade_id}",
            shock_at=ENTRY - timedelta(days=3),
            direction=ShockDirection.DOWN,
            shock_high=2600.0,
            shock_low=2400.0,
            volume_multiple=5.0,
            state=SetupState.TRADE_ACTIVE,
            created_at=ENTRY - timedelta(days=3),
        )
    )
    trade = TradeRecord(
        trade_id=trade_id,
        setup_id=setup_id,
        cycle_id="2026-03-03",
        mode=mode,
        symbol="RELIANCE",
        option_symbol=OPTION,
        instrument_direction="CALL",
        strike=2500.0,
        entry_price=100.0,
        entry_time=ENTRY,
        lots=10,
        capital_used=1000.0,
        stop_loss=85.0,
        raw_confidence=0.8,
        calibrated_confidence=0.8,
        features=["volume_trend", "acceptance_candle"],
    )
    journal.record_trade(trade)
    return trade


def test_paper_venue_applies_slippage(tmp_path) -> None:
    monitor, market_data = _monitor(tmp_path)
    _quote(market_data, 100.0)
    venue = PaperVenue(market_data)

    fill = venue.place_order(OrderRequest("RELIANCE", OPTION, 5, 100.0, "SETUP-1:2026-03-03"))
    trade = _open_trade(monitor.journal)
    exit_fill = venue.exit_position(trade)

    assert fill.success
    assert fill.order_id.startswith("PAPER-")
    assert fill.fill_price == pytest.approx(100.1)
    assert exit_fill.fill_price == pytest.approx(99.9)
    assert not venue.place_order(OrderRequest("RELIANCE", OPTION, 0, 100.0, "x")).success


def test_stop_loss_exit_feeds_calibration_and_learning(tmp_path) -> None:
    monitor, market_data = _monitor(tmp_path)
    trade = _open_trade(monitor.journal)
    _quote(market_data, 80.0)

    closed = monitor.run(ENTRY + timedelta(minutes=20))

    assert [item.exit_reason for item in closed] == [ExitReason.SL_HIT]
    assert closed[0].pnl == pytest.approx((80.0 * 0.999 - 100.0) * 10)
    stored = monitor.journal.get_trade(trade.trade_id)
    assert not stored.is_open
    assert stored.exit_reason == "SL_HIT"

    setup = monitor.journal.get_setup(trade.setup_id)
    assert setup.state == SetupState.IDLE
    assert not setup.active
    samples = monitor.journal.calibration_samples(limit=5)
    assert [sample.outcome for sample in samples] == ["LOSS"]
    weights = monitor.learning.weights()
    assert weights["volume_trend"] < 1.0
    assert weights["acceptance_candle"] < 1.0


def test_next_day_exit_waits_for_exit_time(tmp_path) -> None:
    monitor, market_data = _monitor(tmp_path)
    trade = _open_trade(monitor.journal)
    _quote(market_data, 120.0)

    assert monitor.run(ENTRY + timedelta(minutes=5)) == []
    # 08:30 local the next morning
    assert monitor.run(datetime(2026, 3, 4, 3, 0, tzinfo=timezone.utc)) == []

    closed = monitor.run(datetime(2026, 3, 4, 4, 0, tzinfo=timezone.utc))

    assert [item.exit_reason for item in closed] == [ExitReason.NEXT_DAY_EXIT]
    assert closed[0].pnl == pytest.approx((120.0 * 0.999 - 100.0) * 10)
    assert monitor.journal.open_trades() == []
    assert monitor.journal.calibration_samples(limit=5)[0].outcome == "WIN"
    assert monitor.learning.weights()["volume_trend"] > 1.0
    assert monitor.journal.get_setup(trade.setup_id).state == SetupState.IDLE


def test_flatten_all_closes_every_open_trade(tmp_path) -> None:
    monitor, market_data = _monitor(tmp_path)
    _open_trade(monitor.journal, "PAPER-1")
    _open_trade(monitor.journal, "PAPER-2")
    _quote(market_data, 101.0)

    assert monitor.flatten_all(ENTRY + timedelta(minutes=1)) == 2
    assert monitor.journal.open_trades() == []
    assert monitor.journal.get_trade("PAPER-2").exit_reason == "EMERGENCY"


def test_exit_without_quote_keeps_trade_open(tmp_path) -> None:
    monitor, _ = _monitor(tmp_path)
    trade = _open_trade(monitor.journal)

    assert monitor.close_trade(trade, ExitReason.MANUAL, ENTRY + timedelta(hours=1)) is None
    assert monitor.journal.get_trade(trade.trade_id).is_open


def test_real_mode_without_broker_key(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("BROKER_API_KEY", raising=False)
    monitor, market_data = _monitor(tmp_path)
    _open_trade(monitor.journal, "REAL-1", mode="REAL")
    _quote(market_data, 50.0)

    with pytest.raises(VenueError):
        build_venue(TradingMode.REAL, AppConfig().execution, market_data)
    assert monitor.run(ENTRY + timedelta(days=1)) == []
    assert monitor.journal.get_trade("REAL-1").is_open
