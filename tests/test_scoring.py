from __future__ import annotations

import pytest

from shockbot.strategy.contracts import (
    Decision,
    FeatureVector,
    InstitutionalFlow,
    InstrumentDirection,
    NewsRisk,
    OIAlignment,
    PriceTrend,
    ShockDirection,
    VolumeTrend,
)
from shockbot.strategy.scoring import (
    FEATURE_NAMES,
    ScoringEngine,
    score_days_since_shock,
    score_volume_multiple,
    sub_scores,
    weighted_score,
)


def _features(**overrides) -> FeatureVector:
    values = dict(
        shock_candle=True,
        shock_direction=ShockDirection.DOWN,
        volume_multiple=6.5,
        days_since_shock=1,
        volume_trend=VolumeTrend.DECREASING,
        acceptance_candle=True,
        price_trend=PriceTrend.UP,
        support=95.0,
        resistance=110.0,
        distance_to_support_pct=2.0,
        distance_to_resistance_pct=6.0,
        instrument_direction=InstrumentDirection.CALL,
        strike_preference="ATM",
        spread_pct=0.3,
        oi_alignment=OIAlignment.ALIGNED,
        fii_flow=InstitutionalFlow.STRONG_BUY,
        dii_flow=InstitutionalFlow.BUY,
        news_risk=NewsRisk.LOW,
    )
    values.update(overrides)
    return FeatureVector(**values)


def test_every_named_feature_has_a_sub_score() -> None:
    scores = sub_scores(_features())
    assert set(scores) == set(FEATURE_NAMES)
    assert len(FEATURE_NAMES) == 13
    assert all(0.0 <= value <= 1.0 for value in scores.values())


def test_step_tables() -> None:
    assert score_volume_multiple(2.9) == 0.2
    assert score_volume_multiple(3.0) == 0.5
    assert score_volume_multiple(4.0) == 0.8
    assert score_volume_multiple(6.0) == 1.0
    assert score_days_since_shock(0) == 0.0
    assert score_days_since_shock(2) == 1.0
    assert score_days_since_shock(4) == 0.8
    assert score_days_since_shock(6) == 0.4
    assert score_days_since_shock(7) == 0.0


def test_perfect_setup_scores_one_and_buys_call() -> None:
    result = ScoringEngine().evaluate(_features())

    assert result.score == pytest.approx(1.0)
    assert result.decision == Decision.BUY_CALL
    assert not result.ambiguous


def test_put_direction_and_wait_below_threshold() -> None:
    engine = ScoringEngine(threshold=0.6)
    put = engine.evaluate(_features(instrument_direction=InstrumentDirection.PUT))
    weak = engine.evaluate(
        _features(
            volume_multiple=2.0,
            days_since_shock=7,
            volume_trend=VolumeTrend.EXPANDING,
            acceptance_candle=False,
            price_trend=PriceTrend.RANGE,
            distance_to_resistance_pct=0.5,
            spread_pct=3.0,
            oi_alignment=OIAlignment.NOT_ALIGNED,
            fii_flow=InstitutionalFlow.STRONG_SELL,
            dii_flow=InstitutionalFlow.SELL,
            news_risk=NewsRisk.HIGH,
        )
    )

    assert put.decision == Decision.BUY_PUT
    assert weak.score < 0.6
    assert weak.decision == Decision.WAIT


def test_missing_weights_default_to_one() -> None:
    scores = {"a": 1.0, "b": 0.0}
    assert weighted_score(scores, {}) == pytest.approx(0.5)
    assert weighted_score(scores, {"a": 1.5, "b": 0.5}) == pytest.approx(0.75)
    assert weighted_score(scores, {"a": 0.0, "b": 0.0}) == 0.0


def test_ambiguity_band_is_strict() -> None:
    engine = ScoringEngine(threshold=0.6, ambiguity_band=0.15)
    assert engine.is_ambiguous(0.6)
    assert engine.is_ambiguous(0.5)
    assert engine.is_ambiguous(0.74)
    assert not engine.is_ambiguous(0.8)
    assert not engine.is_ambiguous(0.4)


def test_explain_mentions_key_signals() -> None:
    engine = ScoringEngine()
    features = _features(news_risk=NewsRisk.HIGH)
    text = engine.explain(engine.evaluate(features), features)

    assert text.startswith("Overall score:")
    assert "Acceptance candle detected" in text
    assert "Volume digesting properly" in text
    assert "1 days since shock (optimal)" in text
    assert "High news risk" in text
