from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from shockbot.config import AppConfig
from shockbot.storage.journal import Journal
from shockbot.strategy.contracts import RiskLimits, TradingMode

LOGGER = logging.getLogger(__name__)

TRADING_MODE_KEY = "trading_mode"
RISK_LIMITS_KEY = "risk_limits"
SCORE_THRESHOLD_KEY = "score_threshold"
ADVISORY_PROVIDER_KEY = "advisory_provider"


@dataclass(slots=True)
class RuntimeConfig:
    trading_mode: TradingMode = TradingMode.PAPER
    risk_limits: RiskLimits = field(default_factory=RiskLimits)
    score_threshold: float = 0.6
    advisory_provider: str = "openai"


class ConfigStore:
    """Mutable settings persisted in system_config, falling back to the YAML defaults."""

    def __init__(self, journal: Journal, config: AppConfig):
        self.journal = journal
        self.config = config

    def fetch_config(self) -> RuntimeConfig:
        stored = self.journal.get_config_values()
        limits_cfg = self.config.risk.limits
        limits = RiskLimits(
            max_risk_per_trade_pct=limits_cfg.max_risk_per_trade_pct,
            max_loss_per_day_pct=limits_cfg.max_loss_per_day_pct,
            max_trades_per_day=limits_cfg.max_trades_per_day,
            consecutive_loss_throttle=limits_cfg.consecutive_loss_throttle,
        )
        raw_limits = stored.get(RISK_LIMITS_KEY)
        if isinstance(raw_limits, dict):
            limits = RiskLimits(
                max_risk_per_trade_pct=float(raw_limits.get("max_risk_per_trade_pct", limits.max_risk_per_trade_pct)),
                max_loss_per_day_pct=float(raw_limits.get("max_loss_per_day_pct", limits.max_loss_per_day_pct)),
                max_trades_per_day=int(raw_limits.get("max_trades_per_day", limits.max_trades_per_day)),
                consecutive_loss_throttle=int(
                    raw_limits.get("consecutive_loss_throttle", limits.consecutive_loss_throttle)
                ),
            )
        return RuntimeConfig(
            trading_mode=TradingMode(str(stored.get(TRADING_MODE_KEY, TradingMode.PAPER.value)).upper()),
            risk_limits=limits,
            score_threshold=float(stored.get(SCORE_THRESHOLD_KEY, self.config.scoring.threshold)),
            advisory_provider=str(stored.get(ADVISORY_PROVIDER_KEY, self.config.advisory.provider)).lower(),
        )

    def trading_mode(self) -> TradingMode:
        return self.fetch_config().trading_mode

    def set_trading_mode(self, mode: TradingMode, *, updated_by: str, now: datetime) -> None:
        self.journal.set_config_value(TRADING_MODE_KEY, mode.value, updated_by=updated_by, now=now)
        LOGGER.warning("Trading mode set to %s by %s", mode.value, updated_by)

    def set_score_threshold(self, threshold: float, *, updated_by: str, now: datetime) -> None:
        if not (0.0 <= threshold <= 1.0):
            raise ValueError("score_threshold must be in [0, 1]")
        self.journal.set_config_value(SCORE_THRESHOLD_KEY, float(threshold), updated_by=updated_by, now=now)

    def set_advisory_provider(self, provider: str, *, updated_by: str, now: datetime) -> None:
        name = provider.strip().lower()
        if not name:
            raise ValueError("advisory_provider must not be empty")
        self.journal.set_config_value(ADVISORY_PROVIDER_KEY, name, updated_by=updated_by, now=now)
        LOGGER.info("Advisory provider set to %s by %s", name, updated_by)
