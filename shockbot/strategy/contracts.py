from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SetupState(str, Enum):
    IDLE = "IDLE"
    SHOCK_DETECTED = "SHOCK_DETECTED"
    DIGESTION = "DIGESTION"
    ACCEPTANCE_READY = "ACCEPTANCE_READY"
    TRADE_ACTIVE = "TRADE_ACTIVE"
    FAILED_RESET = "FAILED_RESET"


class ShockDirection(str, Enum):
    UP = "UP"
    DOWN = "DOWN"


class VolumeTrend(str, Enum):
    DECREASING = "DECREASING"
    FLAT = "FLAT"
    EXPANDING = "EXPANDING"


class PriceTrend(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    RANGE = "RANGE"


class InstrumentDirection(str, Enum):
    CALL = "CALL"
    PUT = "PUT"


class Decision(str, Enum):
    BUY_CALL = "BUY_CALL"
    BUY_PUT = "BUY_PUT"
    WAIT = "WAIT"


class TradingMode(str, Enum):
    PAPER = "PAPER"
    REAL = "REAL"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class OIAlignment(str, Enum):
    ALIGNED = "ALIGNED"
    NOT_ALIGNED = "NOT_ALIGNED"


class InstitutionalFlow(str, Enum):
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    NEUTRAL = "NEUTRAL"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"


class NewsRisk(str, Enum):
    LOW = "LOW"
    HIGH = "HIGH"


class ExitReason(str, Enum):
    SL_HIT = "SL_HIT"
    NEXT_DAY_EXIT = "NEXT_DAY_EXIT"
    MANUAL = "MANUAL"
    EMERGENCY = "EMERGENCY"


@dataclass(slots=True)
class Setup:
    setup_id: str
    symbol: str
    shock_at: datetime
    direction: ShockDirection
    shock_high: float
    shock_low: float
    volume_multiple: float
    state: SetupState = SetupState.SHOCK_DETECTED
    days_since_shock: int = 0
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class AuxiliarySignals:
    """Market context supplied by the data store; neutral values when nothing is stored."""

    spread_pct: float = 1.0
    oi_alignment: OIAlignment = OIAlignment.ALIGNED
    fii_flow: InstitutionalFlow = InstitutionalFlow.NEUTRAL
    dii_flow: InstitutionalFlow = InstitutionalFlow.NEUTRAL
    news_risk: NewsRisk = NewsRisk.LOW


@dataclass(slots=True)
class FeatureVector:
    shock_candle: bool
    shock_direction: ShockDirection
    volume_multiple: float
    days_since_shock: int
    volume_trend: VolumeTrend
    acceptance_candle: bool
    price_trend: PriceTrend
    support: float
    resistance: float
    distance_to_support_pct: float
    distance_to_resistance_pct: float
    instrument_direction: InstrumentDirection
    strike_preference: str
    spread_pct: float
    oi_alignment: OIAlignment
    fii_flow: InstitutionalFlow
    dii_flow: InstitutionalFlow
    news_risk: NewsRisk

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        return {key: (value.value if isinstance(value, Enum) else value) for key, value in payload.items()}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FeatureVector":
        return cls(
            shock_candle=bool(payload["shock_candle"]),
            shock_direction=ShockDirection(payload["shock_direction"]),
            volume_multiple=float(payload["volume_multiple"]),
            days_since_shock=int(payload["days_since_shock"]),
            volume_trend=VolumeTrend(payload["volume_trend"]),
            acceptance_candle=bool(payload["acceptance_candle"]),
            price_trend=PriceTrend(payload["price_trend"]),
            support=float(payload["support"]),
            resistance=float(payload["resistance"]),
            distance_to_support_pct=float(payload["distance_to_support_pct"]),
            distance_to_resistance_pct=float(payload["distance_to_resistance_pct"]),
            instrument_direction=InstrumentDirection(payload["instrument_direction"]),
            strike_preference=str(payload["strike_preference"]),
            spread_pct=float(payload["spread_pct"]),
            oi_alignment=OIAlignment(payload["oi_alignment"]),
            fii_flow=InstitutionalFlow(payload["fii_flow"]),
            dii_flow=InstitutionalFlow(payload["dii_flow"]),
            news_risk=NewsRisk(payload["news_risk"]),
        )


@dataclass(slots=True)
class FeatureSnapshot:
    setup_id: str
    created_at: datetime
    features: FeatureVector
    snapshot_id: int | None = None


@dataclass(slots=True)
class ScoreResult:
    score: float
    threshold: float
    ambiguous: bool
    decision: Decision
    sub_scores: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class RiskLimits:
    max_risk_per_trade_pct: float = 1.0
    max_loss_per_day_pct: float = 2.0
    max_trades_per_day: int = 5
    consecutive_loss_throttle: int = 3


@dataclass(slots=True)
class SystemState:
    total_capital: float
    available_capital: float
    today_pnl: float
    today_trades: int
    consecutive_losses: int
    active_positions: int
    market_data_healthy: bool = True
    venue_healthy: bool = True
    advisory_healthy: bool = True
