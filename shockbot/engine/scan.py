from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from shockbot.clock import days_since, to_timezone
from shockbot.config import AppConfig
from shockbot.data.market_data import MarketDataStore
from shockbot.errors import InsufficientData, InvalidTransition
from shockbot.gating.safety_governor import SafetyGovernor
from shockbot.storage.journal import Journal
from shockbot.strategy.contracts import FeatureSnapshot, Setup, SetupState, Severity, VolumeTrend
from shockbot.strategy.features import compute_features, detect_shock_candle, is_price_near_resistance
from shockbot.strategy.state_machine import SetupStateMachine

LOGGER = logging.getLogger(__name__)

_ADVANCING_STATES = [
    SetupState.SHOCK_DETECTED,
    SetupState.DIGESTION,
    SetupState.ACCEPTANCE_READY,
    SetupState.FAILED_RESET,
]
TREND_CANDLES = 10


@dataclass(slots=True)
class ScanResult:
    status: str
    message: str
    new_setups: list[Setup] = field(default_factory=list)
    transitions: dict[str, list[str]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class ScanEngine:
    def __init__(
        self,
        *,
        config: AppConfig,
        journal: Journal,
        market_data: MarketDataStore,
        state_machine: SetupStateMachine,
        governor: SafetyGovernor,
    ):
        self.config = config
        self.journal = journal
        self.market_data = market_data
        self.state_machine = state_machine
        self.governor = governor

    def scan_allowed(self, now: datetime) -> bool:
        return to_timezone(now, self.config.timezone).hour >= self.config.scan.earliest_scan_hour

    def run_scan(self, now: datetime, *, force: bool = False) -> ScanResult:
        if not force and not self.scan_allowed(now):
            return ScanResult(
                status="NOT_ALLOWED",
                message=f"Scan only runs after {self.config.scan.earliest_scan_hour:02d}:00 local time",
            )
        # Existing setups first; a shock found tonight starts advancing on the next run.
        advanced = self.advance_setups(now)
        result = ScanResult(status="OK", message="", transitions=advanced.transitions, errors=dict(advanced.errors))
        for symbol in self.config.universe.symbols:
            try:
                setup = self.detect_symbol(symbol, now)
            except InsufficientData as exc:
                LOGGER.warning("Shock scan skipped %s: %s", symbol, exc)
                result.errors[symbol] = str(exc)
                continue
            if setup is not None:
                result.new_setups.append(setup)
        result.message = (
            f"Scanned {len(self.config.universe.symbols)} symbols, "
            f"{len(result.new_setups)} new setups, {len(result.transitions)} advanced"
        )
        LOGGER.info(result.message)
        return result

    def detect_symbol(self, symbol: str, now: datetime) -> Setup | None:
        scan_cfg = self.config.scan
        candles = self.market_data.fetch_candles(
            symbol,
            self.config.universe.timeframe,
            scan_cfg.volume_lookback + 1,
        )
        if not candles:
            raise InsufficientData(f"No candles for {symbol}")
        shock = detect_shock_candle(
            candles,
            volume_multiple_threshold=scan_cfg.shock_volume_multiple,
            min_body_ratio=scan_cfg.min_body_ratio,
            lookback=scan_cfg.volume_lookback,
        )
        if not shock.is_shock or shock.candle is None or shock.direction is None:
            LOGGER.debug("No shock for %s: %s", symbol, shock.reason)
            return None

        existing = self.journal.active_setup_for_symbol(symbol)
        if existing is not None:
            LOGGER.info("Shock on %s ignored, setup %s already active", symbol, existing.setup_id)
            return None

        candle = shock.candle
        setup = Setup(
            setup_id=f"{symbol}-{candle.timestamp:%Y%m%d}-{uuid.uuid4().hex[:6]}",
            symbol=symbol,
            shock_at=candle.timestamp,
            direction=shock.direction,
            shock_high=candle.high,
            shock_low=candle.low,
            volume_multiple=shock.volume_multiple,
            state=SetupState.IDLE,
            days_since_shock=days_since(candle.timestamp, now),
            created_at=now,
            updated_at=now,
        )
        self.journal.create_setup(setup)
        self.state_machine.transition(setup, SetupState.SHOCK_DETECTED, shock.reason, now)
        self.governor.log_safety_event(
            "SHOCK_CANDLE_DETECTED",
            Severity.INFO,
            f"{symbol}: {shock.reason}",
            "Added to radar",
            now,
            metadata={"setup_id": setup.setup_id, "volume_multiple": round(shock.volume_multiple, 4)},
        )
        return setup

    def advance_setups(self, now: datetime) -> ScanResult:
        result = ScanResult(status="OK", message="")
        for setup in self.journal.list_active_setups(_ADVANCING_STATES):
            try:
                steps = self.advance_setup(setup, now)
            except (InvalidTransition, InsufficientData) as exc:
                LOGGER.error("Could not advance setup %s: %s", setup.setup_id, exc)
                result.errors[setup.setup_id] = str(exc)
                continue
            if steps:
                result.transitions[setup.setup_id] = steps
        return result

    def advance_setup(self, setup: Setup, now: datetime) -> list[str]:
        days = days_since(setup.shock_at, now)
        self.journal.update_setup_days(setup.setup_id, days, now)
        setup.days_since_shock = days
        candles = self.market_data.fetch_candles(
            setup.symbol,
            self.config.universe.timeframe,
            max(TREND_CANDLES, self.config.features.candle_count),
        )
        try:
            features = compute_features(setup, candles, self.market_data.fetch_auxiliary_signals(setup.symbol), now)
        except InsufficientData as exc:
            # No candles: only the age-based rules can move the setup.
            LOGGER.warning("Advancing %s on age only: %s", setup.setup_id, exc)
            applied = self.state_machine.advance(
                setup,
                days_since_shock=days,
                acceptance_candle=False,
                volume_trend=VolumeTrend.FLAT,
                price_near_resistance=False,
                now=now,
            )
            return [step.next_state.value for step in applied]

        self.market_data.save_feature_snapshot(FeatureSnapshot(setup.setup_id, now, features))
        applied = self.state_machine.advance(
            setup,
            days_since_shock=features.days_since_shock,
            acceptance_candle=features.acceptance_candle,
            volume_trend=features.volume_trend,
            price_near_resistance=is_price_near_resistance(features, self.config.features.near_resistance_pct),
            now=now,
        )
        return [step.next_state.value for step in applied]
