from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from shockbot.advisory.service import AdvisoryService, build_prompt
from shockbot.clock import trading_day
from shockbot.config import AppConfig
from shockbot.data.market_data import MarketDataStore
from shockbot.engine.scan import TREND_CANDLES, ScanEngine
from shockbot.engine.system_state import read_system_state
from shockbot.errors import InsufficientData, InvalidTransition, PersistenceFailure, VenueError
from shockbot.execution.sizing import PositionSizer, SizingRequest
from shockbot.execution.venue import ExecutionVenue, OrderRequest
from shockbot.gating.decision_window import DecisionWindow
from shockbot.gating.safety_governor import SafetyGovernor
from shockbot.storage.config_store import ConfigStore, RuntimeConfig
from shockbot.storage.journal import Journal
from shockbot.storage.models import DecisionRecord, TradeRecord
from shockbot.strategy.calibration import CalibrationEngine
from shockbot.strategy.contracts import (
    Decision,
    FeatureVector,
    InstrumentDirection,
    ScoreResult,
    Setup,
    SetupState,
    Severity,
    TradingMode,
)
from shockbot.strategy.features import compute_features
from shockbot.strategy.learning import LearningEngine
from shockbot.strategy.scoring import ScoringEngine
from shockbot.strategy.state_machine import SetupStateMachine, can_trade

LOGGER = logging.getLogger(__name__)

CONTRIBUTING_SUB_SCORE = 0.5
MAX_EVAL_WORKERS = 4


@dataclass(slots=True)
class SetupOutcome:
    setup_id: str
    symbol: str
    decision: Decision
    executed: bool
    reason: str
    trade_id: str | None = None


@dataclass(slots=True)
class CycleResult:
    status: str
    message: str
    cycle_id: str | None = None
    outcomes: list[SetupOutcome] = field(default_factory=list)


@dataclass(slots=True)
class _Evaluation:
    setup: Setup
    features: FeatureVector | None = None
    score: ScoreResult | None = None
    error: str | None = None


class DecisionOrchestrator:
    def __init__(
        self,
        *,
        config: AppConfig,
        journal: Journal,
        config_store: ConfigStore,
        market_data: MarketDataStore,
        governor: SafetyGovernor,
        calibration: CalibrationEngine,
        learning: LearningEngine,
        scan_engine: ScanEngine,
        state_machine: SetupStateMachine,
        venue_for: Callable[[TradingMode], ExecutionVenue],
        advisory: AdvisoryService | None = None,
    ):
        self.config = config
        self.journal = journal
        self.config_store = config_store
        self.market_data = market_data
        self.governor = governor
        self.calibration = calibration
        self.learning = learning
        self.scan_engine = scan_engine
        self.state_machine = state_machine
        self.venue_for = venue_for
        self.advisory = advisory
        self.window = DecisionWindow(config.decision_window, config.timezone)

    def run_decision_cycle(
        self,
        now: datetime,
        *,
        cycle_id: str | None = None,
        ignore_window: bool = False,
    ) -> CycleResult:
        if self.governor.kill_switch_active():
            return CycleResult("KILL_SWITCH_ACTIVE", "Kill switch is active, no decisions taken")

        window = self.window.check(now)
        if not window.allowed and not ignore_window:
            return CycleResult("NOT_IN_WINDOW", window.message)

        try:
            runtime = self.config_store.fetch_config()
        except (PersistenceFailure, ValueError) as exc:
            LOGGER.error("Runtime config unreadable, skipping cycle: %s", exc)
            return CycleResult("CONFIG_UNAVAILABLE", f"Configuration unavailable: {exc}")

        cycle = cycle_id or trading_day(now, self.config.timezone).isoformat()
        self.scan_engine.advance_setups(now)
        ready = [
            setup
            for setup in self.journal.list_active_setups([SetupState.ACCEPTANCE_READY])
            if can_trade(setup.state)
        ]
        if not ready:
            return CycleResult("NO_READY_SETUPS", "No setups in acceptance-ready state", cycle_id=cycle)

        scoring = ScoringEngine(runtime.score_threshold, self.config.scoring.ambiguity_band)
        weights = self.learning.weights()
        evaluations = self._evaluate(ready, scoring, weights, now)

        result = CycleResult("OK", "", cycle_id=cycle)
        for index, evaluation in enumerate(evaluations):
            setup = evaluation.setup
            if self.governor.kill_switch_active():
                for remaining in evaluations[index:]:
                    result.outcomes.append(
                        self._record_skip(
                            remaining.setup,
                            cycle,
                            now,
                            "Emergency stop active, remaining setups aborted",
                            ["EMERGENCY_STOP"],
                        )
                    )
                result.status = "ABORTED"
                break
            if self.journal.decision_exists(setup.setup_id, cycle):
                LOGGER.info("Setup %s already decided in cycle %s", setup.setup_id, cycle)
                continue
            try:
                outcome = self._decide(evaluation, scoring, runtime, cycle, now)
            except PersistenceFailure:
                raise
            except (InsufficientData, InvalidTransition, VenueError) as exc:
                LOGGER.error("Decision for setup %s failed: %s", setup.setup_id, exc)
                outcome = self._record_skip(setup, cycle, now, f"Decision failed: {exc}", ["SETUP_ERROR"])
            result.outcomes.append(outcome)

        executed = sum(1 for outcome in result.outcomes if outcome.executed)
        result.message = f"Evaluated {len(result.outcomes)} setups, executed {executed} trades"
        LOGGER.info("Decision cycle %s: %s", cycle, result.message)
        return result

    def _evaluate_one(
        self,
        setup: Setup,
        scoring: ScoringEngine,
        weights: dict[str, float],
        now: datetime,
    ) -> _Evaluation:
        candles = self.market_data.fetch_candles(
            setup.symbol,
            self.config.universe.timeframe,
            max(TREND_CANDLES, self.config.features.candle_count),
        )
        signals = self.market_data.fetch_auxiliary_signals(setup.symbol)
        try:
            features = compute_features(setup, candles, signals, now)
        except InsufficientData as exc:
            return _Evaluation(setup, error=str(exc))
        return _Evaluation(setup, features=features, score=scoring.evaluate(features, weights))

    def _evaluate(
        self,
        setups: list[Setup],
        scoring: ScoringEngine,
        weights: dict[str, float],
        now: datetime,
    ) -> list[_Evaluation]:
        workers = max(1, min(MAX_EVAL_WORKERS, len(setups)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._evaluate_one, setup, scoring, weights, now) for setup in setups]
            return [future.result() for future in futures]

    def _record(
        self,
        setup: Setup,
        cycle_id: str,
        now: datetime,
        *,
        decision: Decision,
        reasoning: str,
        executed: bool = False,
        score: float | None = None,
        raw_confidence: float | None = None,
        calibrated_confidence: float | None = None,
        advisory_used: bool = False,
        trade_id: str | None = None,
        reason_codes: list[str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> SetupOutcome:
        self.journal.record_decision(
            DecisionRecord(
                setup_id=setup.setup_id,
                cycle_id=cycle_id,
                symbol=setup.symbol,
                decision=decision.value,
                score=score,
                raw_confidence=raw_confidence,
                calibrated_confidence=calibrated_confidence,
                executed=executed,
                reasoning=reasoning,
                created_at=now,
                advisory_used=advisory_used,
                trade_id=trade_id,
                reason_codes=reason_codes or [],
                payload=payload or {},
            )
        )
        return SetupOutcome(setup.setup_id, setup.symbol, decision, executed, reasoning, trade_id)

    def _record_skip(
        self,
        setup: Setup,
        cycle_id: str,
        now: datetime,
        reasoning: str,
        reason_codes: list[str],
    ) -> SetupOutcome:
        return self._record(setup, cycle_id, now, decision=Decision.WAIT, reasoning=reasoning, reason_codes=reason_codes)

    def _decide(
        self,
        evaluation: _Evaluation,
        scoring: ScoringEngine,
        runtime: RuntimeConfig,
        cycle_id: str,
        now: datetime,
    ) -> SetupOutcome:
        setup = evaluation.setup
        if evaluation.features is None or evaluation.score is None:
            return self._record_skip(
                setup,
                cycle_id,
                now,
                f"Insufficient data: {evaluation.error}",
                ["INSUFFICIENT_DATA"],
            )
        features, score = evaluation.features, evaluation.score
        explanation = scoring.explain(score, features)
        payload: dict[str, Any] = {"features": features.to_dict(), "sub_scores": score.sub_scores}

        decision = score.decision
        raw_confidence = score.score
        advisory_used = False
        reasoning = [explanation]
        if score.ambiguous and self.advisory is not None and self.config.advisory.enabled:
            advice = self.advisory.consult(
                build_prompt(setup.symbol, score),
                symbol=setup.symbol,
                state=setup.state,
                features=features,
                provider=runtime.advisory_provider,
            )
            advisory_used = True
            decision = advice.decision
            raw_confidence = advice.confidence
            reasoning.append(f"Advisory ({advice.provider}): {advice.decision.value} {advice.confidence:.2f} - {advice.reason}")
            payload["advisory"] = {"provider": advice.provider, "model": advice.model, "fallback": advice.fallback}

        common = {
            "score": score.score,
            "raw_confidence": raw_confidence,
            "advisory_used": advisory_used,
            "payload": payload,
        }
        if decision == Decision.WAIT:
            reasoning.append("Decision: WAIT")
            return self._record(
                setup, cycle_id, now, decision=decision, reasoning=". ".join(reasoning),
                reason_codes=["NO_SIGNAL"], **common,
            )

        calibration = self.calibration.calibrate(raw_confidence, now=now)
        reasoning.append(calibration.reason)
        common["calibrated_confidence"] = calibration.calibrated_confidence

        mode = self.config_store.trading_mode()
        try:
            venue: ExecutionVenue | None = self.venue_for(mode)
            venue_healthy = venue.is_healthy()
        except VenueError as exc:
            LOGGER.error("Execution venue for %s unavailable: %s", mode.value, exc)
            venue, venue_healthy = None, False

        direction = InstrumentDirection.CALL if decision == Decision.BUY_CALL else InstrumentDirection.PUT
        quote = self.market_data.fetch_option_quote(setup.symbol, direction, features.strike_preference)
        if quote is None:
            reasoning.append(f"No {direction.value} {features.strike_preference} quote available")
            return self._record(
                setup, cycle_id, now, decision=decision, reasoning=". ".join(reasoning),
                reason_codes=["NO_OPTION_QUOTE"], **common,
            )

        state = read_system_state(
            self.journal,
            mode,
            total_capital=self.config.risk.total_capital,
            now=now,
            timezone_name=self.config.timezone,
            market_data_healthy=self.market_data.is_healthy(),
            venue_healthy=venue_healthy,
            advisory_healthy=self.advisory.is_healthy() if self.advisory is not None else True,
        )
        sizer = PositionSizer(runtime.risk_limits, self.config.sizing)
        sizing = sizer.size(
            SizingRequest(
                total_capital=state.total_capital,
                available_capital=state.available_capital,
                calibrated_confidence=calibration.calibrated_confidence,
                consecutive_losses=state.consecutive_losses,
                option_price=quote.price,
                requested_lots=quote.lot_size,
            )
        )
        reasoning.append(sizing.reason)
        payload["sizing"] = {"lots": sizing.lots, "capital_used": sizing.capital_used, "bucket": sizing.confidence_bucket}
        if not sizing.accepted:
            return self._record(
                setup, cycle_id, now, decision=decision, reasoning=". ".join(reasoning),
                reason_codes=["SIZING_REJECTED"], **common,
            )
        validation = sizer.validate(sizing.lots, sizing.capital_used, state.available_capital, state.total_capital)
        if not validation.valid:
            reasoning.append(validation.reason or "Position size invalid")
            return self._record(
                setup, cycle_id, now, decision=decision, reasoning=". ".join(reasoning),
                reason_codes=["SIZE_INVALID"], **common,
            )

        trade_risk = sizing.lots * quote.price * self.config.sizing.stop_distance_fraction
        check = self.governor.check_trade_allowed(state, runtime.risk_limits, trade_risk, now)
        if not check.passed:
            reasoning.append(f"Safety: {check.reason} ({check.action_taken})")
            return self._record(
                setup, cycle_id, now, decision=decision, reasoning=". ".join(reasoning),
                reason_codes=[check.event_type or "SAFETY_BLOCK"], **common,
            )
        if venue is None:
            raise VenueError(f"No execution venue for {mode.value}")

        fill = venue.place_order(
            OrderRequest(
                symbol=setup.symbol,
                option_symbol=quote.option_symbol,
                lots=sizing.lots,
                reference_price=quote.price,
                client_order_id=f"{setup.setup_id}:{cycle_id}",
            )
        )
        if not fill.success or fill.fill_price is None:
            reasoning.append(f"Order failed: {fill.message}")
            return self._record(
                setup, cycle_id, now, decision=decision, reasoning=". ".join(reasoning),
                reason_codes=["ORDER_FAILED"], **common,
            )

        trade = TradeRecord(
            trade_id=f"{mode.value}-{uuid.uuid4().hex[:12]}",
            setup_id=setup.setup_id,
            cycle_id=cycle_id,
            mode=mode.value,
            symbol=setup.symbol,
            option_symbol=quote.option_symbol,
            instrument_direction=direction.value,
            strike=quote.strike,
            entry_price=fill.fill_price,
            entry_time=now,
            lots=sizing.lots,
            capital_used=fill.fill_price * sizing.lots,
            stop_loss=fill.fill_price * self.config.execution.stop_loss_fraction,
            raw_confidence=raw_confidence,
            calibrated_confidence=calibration.calibrated_confidence,
            features=[name for name, value in score.sub_scores.items() if value >= CONTRIBUTING_SUB_SCORE],
            metadata={"order_id": fill.order_id, "advisory_used": advisory_used},
        )
        self.journal.record_trade(trade)
        self.state_machine.transition(setup, SetupState.TRADE_ACTIVE, f"Trade executed: {trade.trade_id}", now)
        self.governor.log_safety_event(
            "OPTION_TRADE_EXECUTED",
            Severity.INFO,
            f"{mode.value} {decision.value} {quote.option_symbol} x{sizing.lots} at {fill.fill_price:.2f}",
            "Trade recorded",
            now,
            metadata={"trade_id": trade.trade_id, "setup_id": setup.setup_id},
        )
        reasoning.append(f"Executed {trade.trade_id}")
        return self._record(
            setup, cycle_id, now, decision=decision, reasoning=". ".join(reasoning), executed=True,
            trade_id=trade.trade_id, reason_codes=["EXECUTED"], **common,
        )
