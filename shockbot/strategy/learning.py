from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime

from shockbot.clock import elapsed_days
from shockbot.config import LearningConfig
from shockbot.errors import LearningWriteDenied
from shockbot.storage.journal import Journal
from shockbot.storage.models import LearningWeight
from shockbot.strategy.contracts import TradingMode
from shockbot.strategy.scoring import FEATURE_NAMES

LOGGER = logging.getLogger(__name__)

PROTECTED_KEYS = frozenset(
    {
        "entry_timing",
        "stop_loss_logic",
        "exit_logic",
        "position_sizing",
        "state_machine",
        "risk_limits",
    }
)
DECAY_BASE = 0.98
DECAY_MIN_WEIGHT = 0.5
DECAY_MAX_WEIGHT = 1.5


@dataclass(slots=True)
class WeightUpdate:
    feature_name: str
    old_weight: float
    new_weight: float
    adjustment: float
    circuit_breaker: bool = False


@dataclass(slots=True)
class LearningStats:
    top_features: list[LearningWeight] = field(default_factory=list)
    worst_features: list[LearningWeight] = field(default_factory=list)
    avg_update_count: float = 0.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def can_modify(key: str) -> bool:
    return key not in PROTECTED_KEYS


class LearningEngine:
    """Moves scoring weights after closed trades. Never touches risk or state rules."""

    def __init__(self, journal: Journal, config: LearningConfig | None = None):
        self.journal = journal
        self.config = config or LearningConfig()

    def learning_rate(self, mode: TradingMode) -> float:
        if mode == TradingMode.REAL:
            return self.config.real_learning_rate
        return self.config.paper_learning_rate

    def weight_adjustment(self, pnl: float, learning_rate: float) -> float:
        cfg = self.config
        magnitude = cfg.base_adjustment * learning_rate * (1.0 + min(1.0, abs(pnl / cfg.pnl_normalizer)))
        return magnitude if pnl > 0 else -magnitude

    def weights(self) -> dict[str, float]:
        return {name: item.weight for name, item in self.journal.load_learning_weights().items()}

    def _new_weight(self, feature_name: str) -> LearningWeight:
        return LearningWeight(
            feature_name=feature_name,
            weight=1.0,
            min_weight=self.config.min_weight,
            max_weight=self.config.max_weight,
        )

    def update_from_trade(
        self,
        features: list[str],
        pnl: float,
        mode: TradingMode,
        now: datetime,
    ) -> list[WeightUpdate]:
        stored = self.journal.load_learning_weights()
        rate = self.learning_rate(mode)
        adjustment = self.weight_adjustment(pnl, rate)
        updates: list[WeightUpdate] = []
        for name in dict.fromkeys(features):
            if not can_modify(name):
                LOGGER.warning("Learning write to protected key %s skipped", name)
                continue
            item = stored.get(name) or self._new_weight(name)
            old_weight = item.weight
            item.weight = _clamp(item.weight + adjustment, item.min_weight, item.max_weight)
            item.update_count += 1
            item.performance_impact += pnl * rate
            item.last_updated = now
            item.decay_periods_applied = 0
            tripped = False
            if item.performance_impact < self.config.circuit_breaker_impact:
                LOGGER.warning(
                    "Circuit breaker reset for feature %s (impact=%.2f)",
                    name,
                    item.performance_impact,
                )
                item.weight = _clamp(1.0, item.min_weight, item.max_weight)
                item.performance_impact = 0.0
                tripped = True
            self.journal.upsert_learning_weight(item)
            updates.append(WeightUpdate(name, old_weight, item.weight, adjustment, circuit_breaker=tripped))
        LOGGER.info(
            "Learning update mode=%s pnl=%.2f rate=%.2f features=%s",
            mode.value,
            pnl,
            rate,
            len(updates),
        )
        return updates

    def apply_time_decay(self, now: datetime) -> list[WeightUpdate]:
        after = self.config.decay_after_days
        updates: list[WeightUpdate] = []
        for item in self.journal.load_learning_weights().values():
            if item.last_updated is None:
                continue
            idle = elapsed_days(item.last_updated, now)
            if idle < after:
                continue
            periods = math.floor((idle - after) / after)
            pending = periods - item.decay_periods_applied
            if pending <= 0:
                continue
            old_weight = item.weight
            low = max(DECAY_MIN_WEIGHT, item.min_weight)
            high = min(DECAY_MAX_WEIGHT, item.max_weight)
            item.weight = _clamp(item.weight * (DECAY_BASE**pending), low, high)
            item.decay_periods_applied = periods
            self.journal.upsert_learning_weight(item)
            updates.append(WeightUpdate(item.feature_name, old_weight, item.weight, item.weight - old_weight))
        return updates

    def set_weight(self, key: str, value: float, now: datetime) -> LearningWeight:
        if not can_modify(key):
            raise LearningWriteDenied(f"Learning may not modify {key}")
        if key not in FEATURE_NAMES:
            raise LearningWriteDenied(f"Unknown feature weight {key}")
        item = self.journal.load_learning_weights().get(key) or self._new_weight(key)
        item.weight = _clamp(float(value), item.min_weight, item.max_weight)
        item.last_updated = now
        item.decay_periods_applied = 0
        self.journal.upsert_learning_weight(item)
        return item

    def learning_stats(self) -> LearningStats:
        items = list(self.journal.load_learning_weights().values())
        if not items:
            return LearningStats()
        ranked = sorted(items, key=lambda item: item.performance_impact, reverse=True)
        return LearningStats(
            top_features=ranked[:5],
            worst_features=list(reversed(ranked))[:5],
            avg_update_count=sum(item.update_count for item in items) / len(items),
        )
