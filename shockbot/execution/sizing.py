"""Confidence-driven option position sizing.

Risk budget
-----------
base risk     : ``max_risk_per_trade_pct% × total_capital × confidence multiplier``
loss throttle : ``0.7 ** consecutive_losses``
lots          : ``floor(adjusted risk / (option_price × stop fraction))``, in ``[1, requested lots]``

A request is rejected (zero lots) below the minimum confidence or when the
premium would exceed available capital.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from shockbot.config import SizingConfig
from shockbot.strategy.contracts import RiskLimits

LOSS_THROTTLE_BASE = 0.7


@dataclass(slots=True)
class SizingRequest:
    total_capital: float
    available_capital: float
    calibrated_confidence: float
    consecutive_losses: int
    option_price: float
    requested_lots: int


@dataclass(slots=True)
class SizingResult:
    lots: int
    capital_used: float
    risk_amount: float
    confidence_bucket: str
    reason: str
    confidence_multiplier: float = 0.0
    throttle_multiplier: float = 1.0

    @property
    def accepted(self) -> bool:
        return self.lots > 0


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    reason: str | None = None


def confidence_multiplier(confidence: float, min_confidence: float = 0.4) -> float:
    if confidence < min_confidence:
        return 0.0
    if confidence < 0.55:
        return 0.5
    if confidence < 0.7:
        return 0.75
    return 1.0


def loss_throttle_multiplier(consecutive_losses: int) -> float:
    if consecutive_losses <= 0:
        return 1.0
    return LOSS_THROTTLE_BASE**consecutive_losses


def confidence_bucket(confidence: float) -> str:
    if confidence < 0.4:
        return "TOO_LOW"
    if confidence < 0.55:
        return "LOW"
    if confidence < 0.7:
        return "MEDIUM"
    if confidence < 0.85:
        return "HIGH"
    return "VERY_HIGH"


def _sizing_reason(confidence: float, multiplier: float, losses: int, throttle: float) -> str:
    parts = [f"Confidence: {confidence * 100:.1f}% -> {multiplier * 100:.0f}% size"]
    if losses > 0:
        parts.append(f"{losses} consecutive losses -> {throttle * 100:.0f}% throttle")
    return ", ".join(parts)


class PositionSizer:
    def __init__(self, limits: RiskLimits, config: SizingConfig | None = None):
        self.limits = limits
        self.config = config or SizingConfig()

    def size(self, request: SizingRequest) -> SizingResult:
        cfg = self.config
        confidence = request.calibrated_confidence
        bucket = confidence_bucket(confidence)
        if confidence < cfg.min_confidence:
            return SizingResult(
                lots=0,
                capital_used=0.0,
                risk_amount=0.0,
                confidence_bucket=bucket,
                reason=f"Confidence below minimum threshold ({cfg.min_confidence})",
            )
        if request.option_price <= 0 or request.requested_lots < 1:
            return SizingResult(
                lots=0,
                capital_used=0.0,
                risk_amount=0.0,
                confidence_bucket=bucket,
                reason="Invalid option price or lot size",
            )

        multiplier = confidence_multiplier(confidence, cfg.min_confidence)
        throttle = loss_throttle_multiplier(request.consecutive_losses)
        max_loss_per_trade = self.limits.max_risk_per_trade_pct / 100.0 * request.total_capital
        adjusted_risk = max_loss_per_trade * multiplier * throttle
        stop_distance = request.option_price * cfg.stop_distance_fraction
        candidate = math.floor(adjusted_risk / stop_distance)
        lots = max(1, min(candidate, request.requested_lots))
        capital_used = request.option_price * lots
        if capital_used > request.available_capital:
            return SizingResult(
                lots=0,
                capital_used=0.0,
                risk_amount=0.0,
                confidence_bucket=bucket,
                reason="Insufficient available capital",
                confidence_multiplier=multiplier,
                throttle_multiplier=throttle,
            )
        return SizingResult(
            lots=lots,
            capital_used=capital_used,
            risk_amount=adjusted_risk,
            confidence_bucket=bucket,
            reason=_sizing_reason(confidence, multiplier, request.consecutive_losses, throttle),
            confidence_multiplier=multiplier,
            throttle_multiplier=throttle,
        )

    def validate(
        self,
        lots: int,
        capital_used: float,
        available_capital: float,
        total_capital: float,
    ) -> ValidationResult:
        if lots < 1:
            return ValidationResult(False, "Lot count must be at least 1")
        if capital_used > available_capital:
            return ValidationResult(False, "Insufficient capital available")
        max_fraction = self.config.max_position_fraction
        if capital_used > total_capital * max_fraction:
            return ValidationResult(False, f"Position size exceeds {max_fraction * 100:.0f}% of total capital")
        return ValidationResult(True)
