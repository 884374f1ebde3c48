from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from shockbot.config import AppConfig
from shockbot.errors import PersistenceFailure
from shockbot.monitoring.alerts import AlertDispatcher
from shockbot.storage.config_store import ConfigStore
from shockbot.storage.journal import Journal
from shockbot.storage.models import KillSwitchRecord, SafetyEventRecord
from shockbot.strategy.contracts import RiskLimits, Severity, SystemState, TradingMode

LOGGER = logging.getLogger(__name__)

SAFETY_GOVERNOR = "SAFETY_GOVERNOR"


@dataclass(slots=True)
class SafetyCheck:
    passed: bool
    reason: str | None = None
    event_type: str | None = None
    severity: Severity | None = None
    action_taken: str | None = None


@dataclass(slots=True)
class GraduationResult:
    can_enable_real: bool
    reasons: list[str] = field(default_factory=list)
    metrics: dict[str, float | int] = field(default_factory=dict)


def max_drawdown_pct(pnls: list[float]) -> float:
    """Largest peak-to-trough giveback of cumulative P&L, oldest trade first.

    The peak starts at zero, so a run that opens with losses is measured against a floor of 1.
    """
    running = 0.0
    peak = 0.0
    worst = 0.0
    for pnl in pnls:
        running += pnl
        peak = max(peak, running)
        worst = max(worst, (peak - running) / max(peak, 1.0) * 100.0)
    return worst


class SafetyGovernor:
    def __init__(
        self,
        journal: Journal,
        config_store: ConfigStore,
        config: AppConfig,
        alerts: AlertDispatcher | None = None,
    ):
        self.journal = journal
        self.config_store = config_store
        self.config = config
        self.alerts = alerts

    def log_safety_event(
        self,
        event_type: str,
        severity: Severity,
        description: str,
        action_taken: str | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> SafetyEventRecord:
        event = SafetyEventRecord(
            event_type=event_type,
            severity=severity.value,
            description=description,
            action_taken=action_taken,
            created_at=now,
            metadata=metadata or {},
        )
        self.journal.log_safety_event(event)
        log_level = logging.WARNING if severity != Severity.INFO else logging.INFO
        LOGGER.log(log_level, "Safety event %s [%s]: %s | %s", event_type, severity.value, description, action_taken)
        if severity == Severity.CRITICAL and self.alerts is not None:
            self.alerts.notify_safety_event(event)
        return event

    # Kill switch -------------------------------------------------------------

    def kill_switch_status(self) -> KillSwitchRecord | None:
        return self.journal.latest_kill_switch()

    def kill_switch_active(self) -> bool:
        """Read-through on every call; an unreadable state counts as active."""
        try:
            record = self.journal.latest_kill_switch()
        except PersistenceFailure as exc:
            LOGGER.error("Kill switch state unreadable, treating as active: %s", exc)
            return True
        return bool(record is not None and record.is_active)

    def _force_paper(self, now: datetime) -> None:
        self.config_store.set_trading_mode(TradingMode.PAPER, updated_by=SAFETY_GOVERNOR, now=now)

    def activate_kill_switch(
        self,
        activated_by: str,
        reason: str,
        now: datetime,
        *,
        event_type: str = "KILL_SWITCH_ACTIVATED",
        metadata: dict[str, Any] | None = None,
    ) -> KillSwitchRecord:
        record = KillSwitchRecord(
            is_active=True,
            reason=reason,
            activated_by=activated_by,
            created_at=now,
            metadata=metadata or {},
        )
        self.journal.append_kill_switch(record)
        self._force_paper(now)
        self.log_safety_event(
            event_type,
            Severity.CRITICAL,
            f"Kill switch activated by {activated_by}: {reason}",
            "All trading stopped, switched to PAPER mode",
            now,
            metadata=metadata,
        )
        return record

    def deactivate_kill_switch(self, deactivated_by: str, reason: str, now: datetime) -> KillSwitchRecord:
        record = KillSwitchRecord(
            is_active=False,
            reason=reason,
            activated_by=deactivated_by,
            created_at=now,
        )
        self.journal.append_kill_switch(record)
        self.log_safety_event(
            "KILL_SWITCH_DEACTIVATED",
            Severity.INFO,
            f"Kill switch deactivated by {deactivated_by}: {reason}",
            "System can now accept trades based on current mode",
            now,
        )
        return record

    def handle_market_black_swan(
        self,
        description: str,
        now: datetime,
        flatten: Callable[[], int] | None = None,
    ) -> int:
        self.log_safety_event(
            "MARKET_BLACK_SWAN",
            Severity.CRITICAL,
            description or "Extreme market volatility or gap detected",
            "Emergency flatten all positions, switch to PAPER mode",
            now,
        )
        self.activate_kill_switch(SAFETY_GOVERNOR, "Market black swan", now)
        if flatten is None:
            return 0
        return flatten()

    def handle_infrastructure_restart(self, now: datetime, open_positions: int) -> None:
        self.log_safety_event(
            "INFRASTRUCTURE_CRASH",
            Severity.CRITICAL,
            f"Restart detected with {open_positions} open positions",
            "Recovering from ledger state",
            now,
        )

    # Pre-trade gate ----------------------------------------------------------

    def check_trade_allowed(
        self,
        state: SystemState,
        limits: RiskLimits,
        proposed_risk: float,
        now: datetime,
    ) -> SafetyCheck:
        if self.kill_switch_active():
            return self._block(
                SafetyCheck(
                    passed=False,
                    reason="Emergency stop is active",
                    event_type="EMERGENCY_STOP_ACTIVE",
                    severity=Severity.WARNING,
                    action_taken="BLOCKED_TRADE",
                ),
                now,
            )

        max_loss = limits.max_loss_per_day_pct / 100.0 * state.total_capital
        current_loss = abs(min(state.today_pnl, 0.0))
        if current_loss >= max_loss:
            check = self._block(
                SafetyCheck(
                    passed=False,
                    reason=f"Daily loss limit breached: {current_loss:.2f} / {max_loss:.2f}",
                    event_type="DAILY_LOSS_LIMIT_BREACH",
                    severity=Severity.CRITICAL,
                    action_taken="DISABLED_REAL_MODE",
                ),
                now,
            )
            self._force_paper(now)
            if self.config.safety.kill_switch_on_daily_loss:
                self.activate_kill_switch(
                    SAFETY_GOVERNOR,
                    check.reason or "Daily loss limit breached",
                    now,
                    event_type="AUTO_KILL_SWITCH_TRIGGERED",
                )
            return check

        if state.today_trades >= limits.max_trades_per_day:
            return self._block(
                SafetyCheck(
                    passed=False,
                    reason=f"Max trades per day reached: {state.today_trades} / {limits.max_trades_per_day}",
                    event_type="MAX_TRADES_EXCEEDED",
                    severity=Severity.WARNING,
                    action_taken="BLOCKED_TRADE",
                ),
                now,
            )

        if state.consecutive_losses >= limits.consecutive_loss_throttle:
            return self._block(
                SafetyCheck(
                    passed=False,
                    reason=f"Consecutive loss throttle active: {state.consecutive_losses} losses in a row",
                    event_type="CONSECUTIVE_LOSS_THROTTLE",
                    severity=Severity.WARNING,
                    action_taken="THROTTLED_TRADING",
                ),
                now,
            )

        max_risk = limits.max_risk_per_trade_pct / 100.0 * state.total_capital
        if proposed_risk > max_risk:
            return self._block(
                SafetyCheck(
                    passed=False,
                    reason=f"Per-trade risk too high: {proposed_risk:.2f} > {max_risk:.2f}",
                    event_type="PER_TRADE_RISK_EXCEEDED",
                    severity=Severity.WARNING,
                    action_taken="BLOCKED_TRADE",
                ),
                now,
            )

        if not state.venue_healthy:
            return self._block(
                SafetyCheck(
                    passed=False,
                    reason="Execution venue is unhealthy or unresponsive",
                    event_type="API_HEALTH_FAILURE",
                    severity=Severity.CRITICAL,
                    action_taken="HALTED_NEW_TRADES",
                ),
                now,
            )

        if not state.market_data_healthy:
            return self._block(
                SafetyCheck(
                    passed=False,
                    reason="Market data integrity issues detected",
                    event_type="DATA_INTEGRITY_ISSUE",
                    severity=Severity.WARNING,
                    action_taken="SKIPPED_DECISION",
                ),
                now,
            )

        return SafetyCheck(passed=True)

    def _block(self, check: SafetyCheck, now: datetime) -> SafetyCheck:
        self.log_safety_event(
            check.event_type or "SAFETY_BLOCK",
            check.severity or Severity.WARNING,
            check.reason or "Trade blocked",
            check.action_taken,
            now,
        )
        return check

    # Graduation --------------------------------------------------------------

    def check_graduation(self, now: datetime) -> GraduationResult:
        cfg = self.config.safety
        try:
            recent = self.journal.recent_closed_trades(TradingMode.PAPER.value, cfg.graduation_window)
            critical = self.journal.safety_events(
                since=now - timedelta(days=cfg.graduation_critical_lookback_days),
                severity=Severity.CRITICAL.value,
            )
        except PersistenceFailure as exc:
            LOGGER.error("Graduation check failed: %s", exc)
            return GraduationResult(False, ["Error checking criteria"])

        reasons: list[str] = []
        pnls = [trade.pnl or 0.0 for trade in reversed(recent)]
        total_pnl = sum(pnls)
        drawdown = max_drawdown_pct(pnls)
        if len(recent) < cfg.graduation_min_trades:
            reasons.append(f"Minimum {cfg.graduation_min_trades} paper trades required (current: {len(recent)})")
        if total_pnl < 0:
            reasons.append("Paper trading must be profitable before enabling REAL mode")
        if drawdown > cfg.graduation_max_drawdown_pct:
            reasons.append(
                f"Max drawdown too high: {drawdown:.2f}% (limit: {cfg.graduation_max_drawdown_pct:.0f}%)"
            )
        if critical:
            reasons.append(
                f"Critical safety events in last {cfg.graduation_critical_lookback_days} days must be resolved"
            )
        return GraduationResult(
            can_enable_real=not reasons,
            reasons=reasons,
            metrics={
                "paper_trades": len(recent),
                "total_pnl": total_pnl,
                "max_drawdown_pct": drawdown,
                "critical_events": len(critical),
            },
        )
