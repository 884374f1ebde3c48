from __future__ import annotations

from typing import Mapping

from shockbot.strategy.contracts import (
    Decision,
    FeatureVector,
    InstitutionalFlow,
    InstrumentDirection,
    NewsRisk,
    OIAlignment,
    PriceTrend,
    ScoreResult,
    VolumeTrend,
)

FEATURE_NAMES: tuple[str, ...] = (
    "shock_candle",
    "volume_multiple",
    "days_since_shock",
    "volume_trend",
    "acceptance_candle",
    "price_trend",
    "distance_to_support",
    "distance_to_resistance",
    "spread",
    "oi_alignment",
    "fii_flow",
    "dii_flow",
    "news_risk",
)

_VOLUME_TREND_SCORES = {
    VolumeTrend.DECREASING: 1.0,
    VolumeTrend.FLAT: 0.6,
    VolumeTrend.EXPANDING: 0.2,
}
_PRICE_TREND_SCORES = {
    PriceTrend.UP: 1.0,
    PriceTrend.DOWN: 1.0,
    PriceTrend.RANGE: 0.5,
}
_FII_SCORES = {
    InstitutionalFlow.STRONG_BUY: 1.0,
    InstitutionalFlow.BUY: 0.8,
    InstitutionalFlow.NEUTRAL: 0.5,
    InstitutionalFlow.SELL: 0.3,
    InstitutionalFlow.STRONG_SELL: 0.1,
}
_DII_SCORES = {
    InstitutionalFlow.STRONG_BUY: 1.0,
    InstitutionalFlow.BUY: 1.0,
    InstitutionalFlow.NEUTRAL: 0.5,
    InstitutionalFlow.SELL: 0.2,
    InstitutionalFlow.STRONG_SELL: 0.2,
}


def score_volume_multiple(multiple: float) -> float:
    if multiple < 3:
        return 0.2
    if multiple < 4:
        return 0.5
    if multiple < 6:
        return 0.8
    return 1.0


def score_days_since_shock(days: int) -> float:
    if days < 1:
        return 0.0
    if days <= 2:
        return 1.0
    if days <= 4:
        return 0.8
    if days <= 6:
        return 0.4
    return 0.0


def score_distance_to_support(distance_pct: float) -> float:
    distance = abs(distance_pct)
    if distance < 1:
        return 0.3
    if distance < 3:
        return 1.0
    if distance < 5:
        return 0.7
    return 0.5


def score_distance_to_resistance(distance_pct: float) -> float:
    if distance_pct < 1:
        return 0.2
    if distance_pct < 3:
        return 0.5
    if distance_pct < 5:
        return 0.8
    return 1.0


def score_spread(spread_pct: float) -> float:
    if spread_pct < 0.5:
        return 1.0
    if spread_pct < 1:
        return 0.8
    if spread_pct < 2:
        return 0.5
    return 0.2


def sub_scores(features: FeatureVector) -> dict[str, float]:
    return {
        "shock_candle": 1.0 if features.shock_candle else 0.0,
        "volume_multiple": score_volume_multiple(features.volume_multiple),
        "days_since_shock": score_days_since_shock(features.days_since_shock),
        "volume_trend": _VOLUME_TREND_SCORES[features.volume_trend],
        "acceptance_candle": 1.0 if features.acceptance_candle else 0.0,
        "price_trend": _PRICE_TREND_SCORES[features.price_trend],
        "distance_to_support": score_distance_to_support(features.distance_to_support_pct),
        "distance_to_resistance": score_distance_to_resistance(features.distance_to_resistance_pct),
        "spread": score_spread(features.spread_pct),
        "oi_alignment": 1.0 if features.oi_alignment == OIAlignment.ALIGNED else 0.3,
        "fii_flow": _FII_SCORES[features.fii_flow],
        "dii_flow": _DII_SCORES[features.dii_flow],
        "news_risk": 1.0 if features.news_risk == NewsRisk.LOW else 0.2,
    }


def weighted_score(scores: Mapping[str, float], weights: Mapping[str, float]) -> float:
    total_weight = 0.0
    weighted_sum = 0.0
    for name, value in scores.items():
        weight = float(weights.get(name, 1.0))
        weighted_sum += value * weight
        total_weight += weight
    if total_weight <= 0:
        return 0.0
    return max(0.0, min(1.0, weighted_sum / total_weight))


class ScoringEngine:
    def __init__(self, threshold: float = 0.6, ambiguity_band: float = 0.15):
        self.threshold = threshold
        self.ambiguity_band = ambiguity_band

    def is_ambiguous(self, score: float) -> bool:
        return abs(score - self.threshold) < self.ambiguity_band

    def decision_for(self, score: float, direction: InstrumentDirection) -> Decision:
        if score < self.threshold:
            return Decision.WAIT
        return Decision.BUY_CALL if direction == InstrumentDirection.CALL else Decision.BUY_PUT

    def evaluate(self, features: FeatureVector, weights: Mapping[str, float] | None = None) -> ScoreResult:
        scores = sub_scores(features)
        score = weighted_score(scores, weights or {})
        return ScoreResult(
            score=score,
            threshold=self.threshold,
            ambiguous=self.is_ambiguous(score),
            decision=self.decision_for(score, features.instrument_direction),
            sub_scores=scores,
        )

    def explain(self, result: ScoreResult, features: FeatureVector) -> str:
        parts = [f"Overall score: {result.score * 100:.1f}% (threshold: {result.threshold * 100:.0f}%)"]
        if features.acceptance_candle:
            parts.append("Acceptance candle detected")
        if features.volume_trend == VolumeTrend.DECREASING:
            parts.append("Volume digesting properly")
        if 1 <= features.days_since_shock <= 2:
            parts.append(f"{features.days_since_shock} days since shock (optimal)")
        if features.news_risk == NewsRisk.HIGH:
            parts.append("High news risk")
        if result.ambiguous:
            parts.append("Score is ambiguous")
        return ". ".join(parts)
