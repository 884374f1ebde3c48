from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


def _parse_hhmm(value: str, field_name: str) -> tuple[int, int]:
    try:
        hour_text, minute_text = str(value).strip().split(":", 1)
        hour, minute = int(hour_text), int(minute_text)
    except ValueError as exc:
        raise ValueError(f"{field_name} must use HH:MM format") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"{field_name} must use HH:MM format")
    return hour, minute


class UniverseConfig(BaseModel):
    symbols: list[str] = Field(default_factory=list)
    timeframe: str = "D1"

    @model_validator(mode="after")
    def normalize_symbols(self) -> "UniverseConfig":
        seen: list[str] = []
        for symbol in self.symbols:
            normalized = str(symbol).strip().upper()
            if normalized and normalized not in seen:
                seen.append(normalized)
        self.symbols = seen
        self.timeframe = str(self.timeframe).strip().upper() or "D1"
        return self


class ScanConfig(BaseModel):
    shock_volume_multiple: float = 4.0
    min_body_ratio: float = 0.6
    volume_lookback: int = 20
    earliest_scan_hour: int = 18

    @model_validator(mode="after")
    def validate_values(self) -> "ScanConfig":
        if self.shock_volume_multiple <= 0:
            raise ValueError("scan.shock_volume_multiple must be > 0")
        if not (0 < self.min_body_ratio <= 1):
            raise ValueError("scan.min_body_ratio must be in (0, 1]")
        if self.volume_lookback <= 0:
            raise ValueError("scan.volume_lookback must be > 0")
        if not (0 <= self.earliest_scan_hour <= 23):
            raise ValueError("scan.earliest_scan_hour must be in [0, 23]")
        return self


class FeaturesConfig(BaseModel):
    candle_count: int = 10
    near_resistance_pct: float = 1.0

    @model_validator(mode="after")
    def validate_values(self) -> "FeaturesConfig":
        if self.candle_count < 2:
            raise ValueError("features.candle_count must be >= 2")
        if self.near_resistance_pct < 0:
            raise ValueError("features.near_resistance_pct must be >= 0")
        return self


class ScoringConfig(BaseModel):
    threshold: float = 0.6
    ambiguity_band: float = 0.15

    @model_validator(mode="after")
    def validate_values(self) -> "ScoringConfig":
        if not (0 <= self.threshold <= 1):
            raise ValueError("scoring.threshold must be in [0, 1]")
        if self.ambiguity_band < 0:
            raise ValueError("scoring.ambiguity_band must be >= 0")
        return self


class CalibrationConfig(BaseModel):
    confidence_band: float = 0.1
    window: int = 50
    min_samples: int = 5
    fallback_factor: float = 0.8
    min_factor: float = 0.5
    max_factor: float = 1.2
    decay_after_days: int = 7

    @model_validator(mode="after")
    def validate_values(self) -> "CalibrationConfig":
        if self.window <= 0:
            raise ValueError("calibration.window must be > 0")
        if self.min_samples <= 0:
            raise ValueError("calibration.min_samples must be > 0")
        if self.min_factor > self.max_factor:
            raise ValueError("calibration.min_factor must be <= calibration.max_factor")
        return self


class SizingConfig(BaseModel):
    min_confidence: float = 0.4
    stop_distance_fraction: float = 0.15
    max_position_fraction: float = 0.20

    @model_validator(mode="after")
    def validate_values(self) -> "SizingConfig":
        if not (0 < self.stop_distance_fraction < 1):
            raise ValueError("sizing.stop_distance_fraction must be in (0, 1)")
        if not (0 < self.max_position_fraction <= 1):
            raise ValueError("sizing.max_position_fraction must be in (0, 1]")
        return self


class RiskLimitsConfig(BaseModel):
    max_risk_per_trade_pct: float = 1.0
    max_loss_per_day_pct: float = 2.0
    max_trades_per_day: int = 5
    consecutive_loss_throttle: int = 3

    @model_validator(mode="after")
    def validate_values(self) -> "RiskLimitsConfig":
        if self.max_risk_per_trade_pct <= 0:
            raise ValueError("risk.max_risk_per_trade_pct must be > 0")
        if self.max_loss_per_day_pct <= 0:
            raise ValueError("risk.max_loss_per_day_pct must be > 0")
        if self.max_trades_per_day <= 0:
            raise ValueError("risk.max_trades_per_day must be > 0")
        if self.consecutive_loss_throttle <= 0:
            raise ValueError("risk.consecutive_loss_throttle must be > 0")
        return self


class RiskConfig(BaseModel):
    total_capital: float = 100000.0
    limits: RiskLimitsConfig = Field(default_factory=RiskLimitsConfig)

    @model_validator(mode="after")
    def validate_values(self) -> "RiskConfig":
        if self.total_capital <= 0:
            raise ValueError("risk.total_capital must be > 0")
        return self


class DecisionWindowConfig(BaseModel):
    start: str = "15:00"
    end: str = "15:15"

    @model_validator(mode="after")
    def validate_values(self) -> "DecisionWindowConfig":
        start = _parse_hhmm(self.start, "decision_window.start")
        end = _parse_hhmm(self.end, "decision_window.end")
        if start > end:
            raise ValueError("decision_window.start must be <= decision_window.end")
        return self


class AdvisoryProviderConfig(BaseModel):
    model: str | None = None
    base_url: str | None = None
    api_key_env: str | None = None


class AdvisoryConfig(BaseModel):
    enabled: bool = True
    provider: str = "openai"
    timeout_seconds: float = 20.0
    temperature: float = 0.3
    providers: dict[str, AdvisoryProviderConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_values(self) -> "AdvisoryConfig":
        self.provider = str(self.provider).strip().lower()
        if self.timeout_seconds <= 0:
            raise ValueError("advisory.timeout_seconds must be > 0")
        self.providers = {str(k).strip().lower(): v for k, v in self.providers.items()}
        return self


class BrokerConfig(BaseModel):
    base_url: str = "http://127.0.0.1:8800"
    api_key_env: str = "BROKER_API_KEY"
    timeout_seconds: float = 10.0


class ExecutionConfig(BaseModel):
    paper_slippage: float = 0.001
    stop_loss_fraction: float = 0.85
    next_day_exit_time: str = "09:30"
    loop_seconds: int = 60
    broker: BrokerConfig = Field(default_factory=BrokerConfig)

    @model_validator(mode="after")
    def validate_values(self) -> "ExecutionConfig":
        if not (0 <= self.paper_slippage < 0.1):
            raise ValueError("execution.paper_slippage must be in [0, 0.1)")
        if not (0 < self.stop_loss_fraction < 1):
            raise ValueError("execution.stop_loss_fraction must be in (0, 1)")
        _parse_hhmm(self.next_day_exit_time, "execution.next_day_exit_time")
        if self.loop_seconds <= 0:
            raise ValueError("execution.loop_seconds must be > 0")
        return self


class LearningConfig(BaseModel):
    paper_learning_rate: float = 0.3
    real_learning_rate: float = 1.0
    base_adjustment: float = 0.05
    pnl_normalizer: float = 1000.0
    min_weight: float = 0.5
    max_weight: float = 1.5
    circuit_breaker_impact: float = -5000.0
    decay_after_days: int = 7

    @model_validator(mode="after")
    def validate_values(self) -> "LearningConfig":
        if self.min_weight > self.max_weight:
            raise ValueError("learning.min_weight must be <= learning.max_weight")
        if self.pnl_normalizer <= 0:
            raise ValueError("learning.pnl_normalizer must be > 0")
        return self


class SafetyConfig(BaseModel):
    kill_switch_on_daily_loss: bool = True
    graduation_window: int = 50
    graduation_min_trades: int = 20
    graduation_max_drawdown_pct: float = 10.0
    graduation_critical_lookback_days: int = 7


class AlertsConfig(BaseModel):
    enabled: bool = False
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 30


class AppConfig(BaseModel):
    timezone: str = "Asia/Kolkata"
    universe: UniverseConfig = Field(default_factory=UniverseConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    decision_window: DecisionWindowConfig = Field(default_factory=DecisionWindowConfig)
    advisory: AdvisoryConfig = Field(default_factory=AdvisoryConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    if not config_path.exists():
        return AppConfig()
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
