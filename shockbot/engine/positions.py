from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from shockbot.clock import to_timezone, trading_day
from shockbot.config import AppConfig
from shockbot.errors import VenueError
from shockbot.execution.venue import ExecutionVenue
from shockbot.storage.journal import Journal
from shockbot.storage.models import TradeRecord
from shockbot.strategy.calibration import CalibrationEngine
from shockbot.strategy.contracts import ExitReason, SetupState, TradingMode
from shockbot.strategy.learning import LearningEngine
from shockbot.strategy.state_machine import SetupStateMachine

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClosedTrade:
    trade_id: str
    exit_price: float
    exit_reason: ExitReason
    pnl: float
    pnl_pct: float


class PositionMonitor:
    """Exits open trades and feeds their outcome back into calibration and learning."""

    def __init__(
        self,
        *,
        config: AppConfig,
        journal: Journal,
        venue_for: Callable[[TradingMode], ExecutionVenue],
        state_machine: SetupStateMachine,
        calibration: CalibrationEngine,
        learning: LearningEngine,
    ):
        self.config = config
        self.journal = journal
        self.venue_for = venue_for
        self.state_machine = state_machine
        self.calibration = calibration
        self.learning = learning

    def _next_day_exit_due(self, trade: TradeRecord, now: datetime) -> bool:
        tz = self.config.timezone
        if trading_day(now, tz) <= trading_day(trade.entry_time, tz):
            return False
        local = to_timezone(now, tz)
        exit_hour, exit_minute = (int(part) for part in self.config.execution.next_day_exit_time.split(":"))
        return (local.hour, local.minute) >= (exit_hour, exit_minute)

    def run(self, now: datetime) -> list[ClosedTrade]:
        closed: list[ClosedTrade] = []
        for mode in (TradingMode.PAPER, TradingMode.REAL):
            trades = self.journal.open_trades(mode.value)
            if not trades:
                continue
            try:
                venue = self.venue_for(mode)
            except VenueError as exc:
                LOGGER.error("Cannot monitor %s positions: %s", mode.value, exc)
                continue
            marks = {mark.trade_id: mark for mark in venue.monitor_positions(trades)}
            for trade in trades:
                mark = marks.get(trade.trade_id)
                reason: ExitReason | None = None
                if mark is not None and mark.stop_hit:
                    reason = ExitReason.SL_HIT
                elif self._next_day_exit_due(trade, now):
                    reason = ExitReason.NEXT_DAY_EXIT
                if reason is None:
                    continue
                result = self.close_trade(trade, reason, now, venue=venue)
                if result is not None:
                    closed.append(result)
        return closed

    def flatten_all(self, now: datetime, reason: ExitReason = ExitReason.EMERGENCY) -> int:
        count = 0
        for trade in self.journal.open_trades():
            try:
                venue = self.venue_for(TradingMode(trade.mode))
            except VenueError as exc:
                LOGGER.error("Cannot flatten %s: %s", trade.trade_id, exc)
                continue
            if self.close_trade(trade, reason, now, venue=venue) is not None:
                count += 1
        return count

    def close_trade(
        self,
        trade: TradeRecord,
        reason: ExitReason,
        now: datetime,
        *,
        venue: ExecutionVenue | None = None,
    ) -> ClosedTrade | None:
        venue = venue or self.venue_for(TradingMode(trade.mode))
        fill = venue.exit_position(trade)
        if not fill.success or fill.fill_price is None:
            LOGGER.error("Exit for trade %s failed: %s", trade.trade_id, fill.message)
            return None

        exit_price = fill.fill_price
        pnl = (exit_price - trade.entry_price) * trade.lots
        pnl_pct = (exit_price - trade.entry_price) / trade.entry_price * 100.0 if trade.entry_price > 0 else 0.0
        self.journal.update_trade(
            trade.trade_id,
            exit_price=exit_price,
            exit_time=now,
            exit_reason=reason.value,
            pnl=pnl,
            pnl_pct=pnl_pct,
        )
        LOGGER.info(
            "Closed trade %s (%s) at %.2f reason=%s pnl=%.2f",
            trade.trade_id,
            trade.option_symbol,
            exit_price,
            reason.value,
            pnl,
        )

        setup = self.journal.get_setup(trade.setup_id)
        if setup is not None and setup.state == SetupState.TRADE_ACTIVE:
            self.state_machine.transition(setup, SetupState.IDLE, f"Trade closed: {reason.value}", now)

        self.calibration.record_outcome(
            raw_confidence=trade.raw_confidence,
            calibrated_confidence=trade.calibrated_confidence,
            pnl=pnl,
            now=now,
            trade_id=trade.trade_id,
        )
        self.learning.update_from_trade(trade.features, pnl, TradingMode(trade.mode), now)
        return ClosedTrade(trade.trade_id, exit_price, reason, pnl, pnl_pct)
