from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime

from shockbot.clock import elapsed_days
from shockbot.config import CalibrationConfig
from shockbot.storage.journal import Journal
from shockbot.storage.models import CalibrationSample

LOGGER = logging.getLogger(__name__)

DECAY_BASE = 0.95
DECAY_FLOOR = 0.8
DECAY_CAP = 1.0
STATS_WINDOW = 100


@dataclass(slots=True)
class CalibrationResult:
    raw_confidence: float
    calibrated_confidence: float
    factor: float
    sample_count: int
    win_rate: float | None
    reason: str
    degraded: bool = False


@dataclass(slots=True)
class CalibrationStats:
    avg_factor: float
    win_rate: float
    total_samples: int


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def base_factor(win_rate: float) -> float:
    if win_rate < 0.4:
        return 0.6
    if win_rate < 0.5:
        return 0.8
    if win_rate > 0.7:
        return 1.1
    return 1.0


def calibration_factor(win_rate: float, similarity: float, min_factor: float = 0.5, max_factor: float = 1.2) -> float:
    return _clamp(base_factor(win_rate) + (similarity - 0.5) * 0.2, min_factor, max_factor)


def apply_time_decay(factor: float, days_idle: float, decay_after_days: int = 7) -> float:
    """Loosen a stale factor toward [0.8, 1.0]; never raises it."""
    if days_idle <= decay_after_days:
        return factor
    periods = math.floor((days_idle - decay_after_days) / decay_after_days)
    decayed = _clamp(factor * (DECAY_BASE**periods), DECAY_FLOOR, DECAY_CAP)
    return min(factor, decayed)


class CalibrationEngine:
    def __init__(self, journal: Journal, config: CalibrationConfig | None = None):
        self.journal = journal
        self.config = config or CalibrationConfig()

    def calibrate(self, raw_confidence: float, similarity: float = 1.0, now: datetime | None = None) -> CalibrationResult:
        cfg = self.config
        try:
            samples = self.journal.calibration_samples(
                limit=cfg.window,
                min_raw=raw_confidence - cfg.confidence_band,
                max_raw=raw_confidence + cfg.confidence_band,
            )
            latest = self.journal.calibration_samples(limit=1) if now is not None else []
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Calibration lookup failed, degrading confidence: %s", exc)
            return CalibrationResult(
                raw_confidence=raw_confidence,
                calibrated_confidence=_clamp(raw_confidence * cfg.fallback_factor, 0.0, 1.0),
                factor=cfg.fallback_factor,
                sample_count=0,
                win_rate=None,
                reason="calibration unavailable",
                degraded=True,
            )

        if len(samples) < cfg.min_samples:
            return CalibrationResult(
                raw_confidence=raw_confidence,
                calibrated_confidence=_clamp(raw_confidence, 0.0, 1.0),
                factor=1.0,
                sample_count=len(samples),
                win_rate=None,
                reason=f"Insufficient history ({len(samples)}/{cfg.min_samples} samples), no adjustment",
            )

        wins = sum(1 for sample in samples if sample.outcome == "WIN")
        win_rate = wins / len(samples)
        factor = calibration_factor(win_rate, similarity, cfg.min_factor, cfg.max_factor)
        reason = f"Win rate {win_rate * 100:.0f}% over {len(samples)} samples -> factor {factor:.2f}"
        if latest and latest[0].created_at is not None:
            idle = elapsed_days(latest[0].created_at, now)
            decayed = apply_time_decay(factor, idle, cfg.decay_after_days)
            if decayed != factor:
                reason += f", decayed to {decayed:.2f} after {idle:.0f} idle days"
                factor = decayed
        return CalibrationResult(
            raw_confidence=raw_confidence,
            calibrated_confidence=_clamp(raw_confidence * factor, 0.0, 1.0),
            factor=factor,
            sample_count=len(samples),
            win_rate=win_rate,
            reason=reason,
        )

    def record_outcome(
        self,
        *,
        raw_confidence: float,
        calibrated_confidence: float,
        pnl: float,
        now: datetime,
        trade_id: str | None = None,
    ) -> CalibrationSample:
        factor = calibrated_confidence / raw_confidence if raw_confidence > 0 else 1.0
        sample = CalibrationSample(
            trade_id=trade_id,
            raw_confidence=raw_confidence,
            factor=factor,
            calibrated_confidence=calibrated_confidence,
            outcome="WIN" if pnl > 0 else "LOSS",
            pnl=pnl,
            created_at=now,
        )
        self.journal.insert_calibration_sample(sample)
        return sample

    def calibration_stats(self) -> CalibrationStats:
        samples = self.journal.calibration_samples(limit=STATS_WINDOW)
        if not samples:
            return CalibrationStats(avg_factor=1.0, win_rate=0.5, total_samples=0)
        wins = sum(1 for sample in samples if sample.outcome == "WIN")
        return CalibrationStats(
            avg_factor=sum(sample.factor for sample in samples) / len(samples),
            win_rate=wins / len(samples),
            total_samples=len(samples),
        )
