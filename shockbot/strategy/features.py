from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from shockbot.clock import days_since
from shockbot.data.candles import Candle
from shockbot.errors import InsufficientData
from shockbot.strategy.contracts import (
    AuxiliarySignals,
    FeatureVector,
    InstrumentDirection,
    PriceTrend,
    Setup,
    ShockDirection,
    VolumeTrend,
)

VOLUME_TREND_WINDOW = 3
VOLUME_DECREASING_RATIO = 0.8
VOLUME_EXPANDING_RATIO = 1.2
ACCEPTANCE_BODY_RATIO = 0.5
TREND_LOOKBACK = 10
TREND_MIN_CANDLES = 5
TREND_THRESHOLD_PCT = 3.0
STRIKE_PREFERENCE = "ATM"


@dataclass(slots=True)
class ShockResult:
    is_shock: bool
    reason: str
    direction: ShockDirection | None = None
    volume_multiple: float = 0.0
    body_ratio: float = 0.0
    candle: Candle | None = None


def detect_shock_candle(
    candles: list[Candle],
    *,
    volume_multiple_threshold: float = 4.0,
    min_body_ratio: float = 0.6,
    lookback: int = 20,
) -> ShockResult:
    """Checks whether the latest candle is a shock: outsized volume and a dominant body."""
    if len(candles) < lookback + 1:
        return ShockResult(False, f"Insufficient candle history ({len(candles)}/{lookback + 1})")
    latest = candles[-1]
    previous = candles[-(lookback + 1):-1]
    avg_volume = sum(c.volume for c in previous) / len(previous)
    if avg_volume <= 0:
        return ShockResult(False, "No trailing volume to compare against", candle=latest)
    multiple = latest.volume / avg_volume
    if multiple < volume_multiple_threshold:
        return ShockResult(
            False,
            f"Volume multiple {multiple:.2f}x below {volume_multiple_threshold:.1f}x",
            volume_multiple=multiple,
            candle=latest,
        )
    if latest.range <= 0:
        return ShockResult(False, "Zero-range candle", volume_multiple=multiple, candle=latest)
    body_ratio = latest.body / latest.range
    if body_ratio < min_body_ratio:
        return ShockResult(
            False,
            f"Body ratio {body_ratio:.2f} below {min_body_ratio:.2f}",
            volume_multiple=multiple,
            body_ratio=body_ratio,
            candle=latest,
        )
    direction = ShockDirection.UP if latest.is_green else ShockDirection.DOWN
    color = "GREEN" if direction == ShockDirection.UP else "RED"
    return ShockResult(
        True,
        f"{color} shock candle: {multiple:.2f}x volume, {body_ratio * 100:.0f}% body",
        direction=direction,
        volume_multiple=multiple,
        body_ratio=body_ratio,
        candle=latest,
    )


def volume_trend(candles: list[Candle]) -> VolumeTrend:
    if len(candles) < VOLUME_TREND_WINDOW * 2:
        return VolumeTrend.FLAT
    recent = candles[-VOLUME_TREND_WINDOW:]
    prior = candles[-VOLUME_TREND_WINDOW * 2:-VOLUME_TREND_WINDOW]
    recent_avg = sum(c.volume for c in recent) / VOLUME_TREND_WINDOW
    prior_avg = sum(c.volume for c in prior) / VOLUME_TREND_WINDOW
    if prior_avg <= 0:
        return VolumeTrend.FLAT
    ratio = recent_avg / prior_avg
    if ratio <= VOLUME_DECREASING_RATIO:
        return VolumeTrend.DECREASING
    if ratio >= VOLUME_EXPANDING_RATIO:
        return VolumeTrend.EXPANDING
    return VolumeTrend.FLAT


def is_acceptance_candle(candles: list[Candle], shock_direction: ShockDirection) -> bool:
    if len(candles) < 2:
        return False
    latest = candles[-1]
    if latest.range <= 0:
        return False
    if latest.body / latest.range < ACCEPTANCE_BODY_RATIO:
        return False
    if shock_direction == ShockDirection.DOWN:
        return latest.close > latest.open
    return latest.close < latest.open


def price_trend(candles: list[Candle]) -> PriceTrend:
    if len(candles) < TREND_MIN_CANDLES:
        return PriceTrend.RANGE
    window = candles[-TREND_LOOKBACK:]
    first_close = window[0].close
    if first_close <= 0:
        return PriceTrend.RANGE
    change_pct = (window[-1].close - first_close) / first_close * 100.0
    if change_pct > TREND_THRESHOLD_PCT:
        return PriceTrend.UP
    if change_pct < -TREND_THRESHOLD_PCT:
        return PriceTrend.DOWN
    return PriceTrend.RANGE


def instrument_direction(
    shock_direction: ShockDirection,
    acceptance: bool,
    trend: PriceTrend,
) -> InstrumentDirection:
    if acceptance and shock_direction == ShockDirection.DOWN:
        return InstrumentDirection.CALL
    if acceptance and shock_direction == ShockDirection.UP:
        return InstrumentDirection.PUT
    if trend == PriceTrend.DOWN:
        return InstrumentDirection.PUT
    return InstrumentDirection.CALL


def compute_features(
    setup: Setup,
    candles: list[Candle],
    signals: AuxiliarySignals,
    now: datetime,
) -> FeatureVector:
    if not candles:
        raise InsufficientData(f"No candles available for {setup.symbol}")
    price = candles[-1].close
    if price <= 0 or setup.shock_low <= 0:
        raise InsufficientData(f"Non-positive price data for {setup.symbol}")

    acceptance = is_acceptance_candle(candles, setup.direction)
    # The shock bar itself is not part of the digestion volume series.
    digestion = [candle for candle in candles if candle.timestamp != setup.shock_at]
    trend = price_trend(candles)
    support = setup.shock_low
    resistance = setup.shock_high
    return FeatureVector(
        shock_candle=True,
        shock_direction=setup.direction,
        volume_multiple=setup.volume_multiple,
        days_since_shock=days_since(setup.shock_at, now),
        volume_trend=volume_trend(digestion),
        acceptance_candle=acceptance,
        price_trend=trend,
        support=support,
        resistance=resistance,
        distance_to_support_pct=(price - support) / support * 100.0,
        distance_to_resistance_pct=(resistance - price) / price * 100.0,
        instrument_direction=instrument_direction(setup.direction, acceptance, trend),
        strike_preference=STRIKE_PREFERENCE,
        spread_pct=signals.spread_pct,
        oi_alignment=signals.oi_alignment,
        fii_flow=signals.fii_flow,
        dii_flow=signals.dii_flow,
        news_risk=signals.news_risk,
    )


def is_price_near_resistance(features: FeatureVector, threshold_pct: float) -> bool:
    return features.distance_to_resistance_pct < threshold_pct
