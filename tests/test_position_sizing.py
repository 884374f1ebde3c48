from __future__ import annotations

import pytest

from shockbot.execution.sizing import (
    PositionSizer,
    SizingRequest,
    confidence_bucket,
    confidence_multiplier,
    loss_throttle_multiplier,
)
from shockbot.strategy.contracts import RiskLimits


def _request(**overrides) -> SizingRequest:
    values = dict(
        total_capital=100000.0,
        available_capital=100000.0,
        calibrated_confidence=0.8,
        consecutive_losses=0,
        option_price=100.0,
        requested_lots=50,
    )
    values.update(overrides)
    return SizingRequest(**values)


def test_multiplier_tables() -> None:
    assert confidence_multiplier(0.39) == 0.0
    assert confidence_multiplier(0.42) == 0.5
    assert confidence_multiplier(0.6) == 0.75
    assert confidence_multiplier(0.9) == 1.0
    assert loss_throttle_multiplier(0) == 1.0
    assert loss_throttle_multiplier(2) == pytest.approx(0.49)
    assert confidence_bucket(0.5) == "LOW"
    assert confidence_bucket(0.9) == "VERY_HIGH"


def test_low_confidence_after_losses_shrinks_risk() -> None:
    sizer = PositionSizer(RiskLimits())

    result = sizer.size(_request(calibrated_confidence=0.42, consecutive_losses=2))

    assert result.risk_amount == pytest.approx(245.0)
    assert result.lots == 16
    assert result.capital_used == pytest.approx(1600.0)
    assert result.confidence_bucket == "LOW"
    assert result.reason == "Confidence: 42.0% -> 50% size, 2 consecutive losses -> 49% throttle"


def test_lots_are_capped_by_request_and_floored_at_one() -> None:
    sizer = PositionSizer(RiskLimits())

    capped = sizer.size(_request(requested_lots=10))
    floored = sizer.size(_request(option_price=20000.0, requested_lots=5))

    assert capped.lots == 10
    assert floored.lots == 1


def test_rejections() -> None:
    sizer = PositionSizer(RiskLimits())

    too_unsure = sizer.size(_request(calibrated_confidence=0.3))
    too_poor = sizer.size(_request(available_capital=500.0))

    assert not too_unsure.accepted
    assert too_unsure.reason == "Confidence below minimum threshold (0.4)"
    assert not too_poor.accepted
    assert too_poor.reason == "Insufficient available capital"


def test_validate_position() -> None:
    sizer = PositionSizer(RiskLimits())

    assert sizer.validate(10, 1000.0, 50000.0, 100000.0).valid
    assert sizer.validate(0, 0.0, 50000.0, 100000.0).reason == "Lot count must be at least 1"
    assert sizer.validate(10, 60000.0, 50000.0, 100000.0).reason == "Insufficient capital available"
    assert sizer.validate(10, 25000.0, 50000.0, 100000.0).reason == "Position size exceeds 20% of total capital"
