from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from shockbot.errors import InvalidTransition
from shockbot.storage.journal import Journal
from shockbot.strategy.contracts import Setup, SetupState, VolumeTrend

LOGGER = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[SetupState, frozenset[SetupState]] = {
    SetupState.IDLE: frozenset({SetupState.SHOCK_DETECTED}),
    SetupState.SHOCK_DETECTED: frozenset({SetupState.DIGESTION, SetupState.FAILED_RESET}),
    SetupState.DIGESTION: frozenset({SetupState.ACCEPTANCE_READY, SetupState.FAILED_RESET}),
    SetupState.ACCEPTANCE_READY: frozenset({SetupState.TRADE_ACTIVE, SetupState.FAILED_RESET}),
    SetupState.TRADE_ACTIVE: frozenset({SetupState.IDLE}),
    SetupState.FAILED_RESET: frozenset({SetupState.IDLE}),
}

STATE_DESCRIPTIONS: dict[SetupState, str] = {
    SetupState.IDLE: "No active setup",
    SetupState.SHOCK_DETECTED: "High-volume shock candle detected",
    SetupState.DIGESTION: "Tracking volume decay and price consolidation",
    SetupState.ACCEPTANCE_READY: "Potential reversal/acceptance candle identified",
    SetupState.TRADE_ACTIVE: "Position is active",
    SetupState.FAILED_RESET: "Setup invalidated, resetting",
}

# Rule 1 only applies while a setup is still being qualified.
_TRACKING_STATES = frozenset({SetupState.SHOCK_DETECTED, SetupState.DIGESTION, SetupState.ACCEPTANCE_READY})

MAX_SHOCK_AGE_DAYS = 6
ACCEPTANCE_MIN_DAYS = 1
ACCEPTANCE_MAX_DAYS = 4


NO_CHANGE_REASON = "No state change required"


@dataclass(slots=True)
class TransitionResult:
    next_state: SetupState
    reason: str
    changed: bool = True


def validate_transition(from_state: SetupState, to_state: SetupState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, frozenset())


def valid_next_states(state: SetupState) -> list[SetupState]:
    return sorted(VALID_TRANSITIONS.get(state, frozenset()), key=lambda item: item.value)


def can_trade(state: SetupState) -> bool:
    return state == SetupState.ACCEPTANCE_READY


def describe(state: SetupState) -> str:
    return STATE_DESCRIPTIONS.get(state, "Unknown state")


def determine_next_state(
    state: SetupState,
    *,
    days_since_shock: int,
    acceptance_candle: bool,
    volume_trend: VolumeTrend,
    price_near_resistance: bool,
) -> TransitionResult:
    if state in _TRACKING_STATES:
        if days_since_shock > MAX_SHOCK_AGE_DAYS:
            return TransitionResult(SetupState.FAILED_RESET, "Setup invalidated: Too many days since shock candle")
        if state == SetupState.DIGESTION and volume_trend == VolumeTrend.EXPANDING:
            return TransitionResult(
                SetupState.FAILED_RESET,
                "Setup invalidated: Volume expanding instead of digesting",
            )
        if (
            state == SetupState.ACCEPTANCE_READY
            and price_near_resistance
            and volume_trend != VolumeTrend.DECREASING
        ):
            return TransitionResult(SetupState.FAILED_RESET, "Setup invalidated: Price too close to resistance")

    if state == SetupState.SHOCK_DETECTED and days_since_shock >= 1:
        return TransitionResult(SetupState.DIGESTION, "Shock candle detected, entering digestion phase")

    if (
        state == SetupState.DIGESTION
        and ACCEPTANCE_MIN_DAYS <= days_since_shock <= ACCEPTANCE_MAX_DAYS
        and acceptance_candle
        and volume_trend == VolumeTrend.DECREASING
    ):
        return TransitionResult(SetupState.ACCEPTANCE_READY, "Acceptance candle detected, ready for decision")

    if state == SetupState.FAILED_RESET:
        return TransitionResult(SetupState.IDLE, "Resetting to idle state")

    return TransitionResult(state, NO_CHANGE_REASON, changed=False)


class SetupStateMachine:
    """Applies audited transitions to persisted setups."""

    def __init__(self, journal: Journal):
        self.journal = journal

    def transition(self, setup: Setup, new_state: SetupState, reason: str, now: datetime) -> Setup:
        if not validate_transition(setup.state, new_state):
            raise InvalidTransition(setup.state.value, new_state.value)
        # Reaching Idle ends the setup; a new shock creates a new one.
        active = new_state != SetupState.IDLE
        self.journal.record_transition(
            setup.setup_id,
            setup.state,
            new_state,
            reason,
            now,
            active=active,
        )
        LOGGER.info(
            "Setup %s (%s): %s -> %s | %s",
            setup.setup_id,
            setup.symbol,
            setup.state.value,
            new_state.value,
            reason,
        )
        setup.state = new_state
        setup.active = active
        setup.updated_at = now
        return setup

    def advance(
        self,
        setup: Setup,
        *,
        days_since_shock: int,
        acceptance_candle: bool,
        volume_trend: VolumeTrend,
        price_near_resistance: bool,
        now: datetime,
    ) -> list[TransitionResult]:
        """Apply rules until the state settles; every step is recorded."""
        applied: list[TransitionResult] = []
        for _ in range(len(VALID_TRANSITIONS)):
            result = determine_next_state(
                setup.state,
                days_since_shock=days_since_shock,
                acceptance_candle=acceptance_candle,
                volume_trend=volume_trend,
                price_near_resistance=price_near_resistance,
            )
            if not result.changed:
                break
            self.transition(setup, result.next_state, result.reason, now)
            applied.append(result)
            if not setup.active:
                break
        return applied
