from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class TransitionRecord:
    setup_id: str
    previous_state: str
    new_state: str
    reason: str
    created_at: datetime


@dataclass(slots=True)
class TradeRecord:
    trade_id: str
    setup_id: str
    cycle_id: str
    mode: str
    symbol: str
    option_symbol: str
    instrument_direction: str
    strike: float
    entry_price: float
    entry_time: datetime
    lots: int
    capital_used: float
    stop_loss: float
    raw_confidence: float
    calibrated_confidence: float
    status: str = "OPEN"
    exit_price: float | None = None
    exit_time: datetime | None = None
    exit_reason: str | None = None
    pnl: float | None = None
    pnl_pct: float | None = None
    features: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN"


@dataclass(slots=True)
class DecisionRecord:
    setup_id: str
    cycle_id: str
    symbol: str
    decision: str
    score: float | None
    raw_confidence: float | None
    calibrated_confidence: float | None
    executed: bool
    reasoning: str
    created_at: datetime
    advisory_used: bool = False
    trade_id: str | None = None
    reason_codes: list[str] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SafetyEventRecord:
    event_type: str
    severity: str
    description: str
    action_taken: str | None
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    event_id: int | None = None


@dataclass(slots=True)
class KillSwitchRecord:
    is_active: bool
    reason: str
    activated_by: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CalibrationSample:
    raw_confidence: float
    factor: float
    calibrated_confidence: float
    outcome: str
    pnl: float
    created_at: datetime
    trade_id: str | None = None


@dataclass(slots=True)
class LearningWeight:
    feature_name: str
    weight: float = 1.0
    min_weight: float = 0.5
    max_weight: float = 1.5
    update_count: int = 0
    performance_impact: float = 0.0
    last_updated: datetime | None = None
    decay_periods_applied: int = 0
