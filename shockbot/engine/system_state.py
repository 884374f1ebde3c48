from __future__ import annotations

from datetime import datetime

from shockbot.clock import trading_day_bounds
from shockbot.storage.journal import Journal
from shockbot.strategy.contracts import SystemState, TradingMode

STREAK_LOOKBACK = 50


def consecutive_losses(pnls_newest_first: list[float]) -> int:
    streak = 0
    for pnl in pnls_newest_first:
        if pnl >= 0:
            break
        streak += 1
    return streak


def read_system_state(
    journal: Journal,
    mode: TradingMode,
    *,
    total_capital: float,
    now: datetime,
    timezone_name: str,
    market_data_healthy: bool = True,
    venue_healthy: bool = True,
    advisory_healthy: bool = True,
) -> SystemState:
    """Recomputed from the ledger on every call; nothing is cached between setups."""
    day_start, day_end = trading_day_bounds(now, timezone_name)
    entered_today = journal.trades_entered_between(mode.value, day_start, day_end)
    closed_today = journal.trades_closed_between(mode.value, day_start, day_end)
    open_trades = journal.open_trades(mode.value)
    recent = journal.recent_closed_trades(mode.value, STREAK_LOOKBACK)
    capital_in_use = sum(trade.capital_used for trade in open_trades)
    return SystemState(
        total_capital=total_capital,
        available_capital=max(0.0, total_capital - capital_in_use),
        today_pnl=sum(trade.pnl or 0.0 for trade in closed_today),
        today_trades=len(entered_today),
        consecutive_losses=consecutive_losses([trade.pnl or 0.0 for trade in recent]),
        active_positions=len(open_trades),
        market_data_healthy=market_data_healthy,
        venue_healthy=venue_healthy,
        advisory_healthy=advisory_healthy,
    )
