from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shockbot.errors import InvalidTransition
from shockbot.storage.db import get_connection, init_db
from shockbot.storage.journal import Journal
from shockbot.strategy.contracts import Setup, SetupState, ShockDirection, VolumeTrend
from shockbot.strategy.state_machine import (
    NO_CHANGE_REASON,
    SetupStateMachine,
    can_trade,
    describe,
    determine_next_state,
    validate_transition,
    valid_next_states,
)

NOW = datetime(2026, 2, 10, 9, 35, tzinfo=timezone.utc)


def _journal(tmp_path) -> Journal:
    conn = get_connection(tmp_path / "state_machine.db")
    init_db(conn)
    return Journal(conn)


def _setup(journal: Journal, state: SetupState = SetupState.SHOCK_DETECTED) -> Setup:
    setup = Setup(
        setup_id="RELIANCE-1",
        symbol="RELIANCE",
        shock_at=NOW - timedelta(hours=18),
        direction=ShockDirection.DOWN,
        shock_high=2500.0,
        shock_low=2400.0,
        volume_multiple=5.0,
        state=state,
        created_at=NOW - timedelta(hours=18),
    )
    journal.create_setup(setup)
    return setup


def test_transition_table_matches_lifecycle() -> None:
    assert validate_transition(SetupState.IDLE, SetupState.SHOCK_DETECTED)
    assert validate_transition(SetupState.ACCEPTANCE_READY, SetupState.TRADE_ACTIVE)
    assert validate_transition(SetupState.TRADE_ACTIVE, SetupState.IDLE)
    assert not validate_transition(SetupState.IDLE, SetupState.TRADE_ACTIVE)
    assert not validate_transition(SetupState.SHOCK_DETECTED, SetupState.ACCEPTANCE_READY)
    assert not validate_transition(SetupState.TRADE_ACTIVE, SetupState.FAILED_RESET)
    assert valid_next_states(SetupState.DIGESTION) == [SetupState.ACCEPTANCE_READY, SetupState.FAILED_RESET]
    assert can_trade(SetupState.ACCEPTANCE_READY)
    assert not can_trade(SetupState.DIGESTION)
    assert describe(SetupState.TRADE_ACTIVE) == "Position is active"


def test_old_setup_fails_before_any_other_rule() -> None:
    result = determine_next_state(
        SetupState.DIGESTION,
        days_since_shock=7,
        acceptance_candle=True,
        volume_trend=VolumeTrend.DECREASING,
        price_near_resistance=False,
    )
    assert result.next_state == SetupState.FAILED_RESET
    assert result.reason == "Setup invalidated: Too many days since shock candle"


def test_six_days_is_still_tracked() -> None:
    result = determine_next_state(
        SetupState.DIGESTION,
        days_since_shock=6,
        acceptance_candle=False,
        volume_trend=VolumeTrend.FLAT,
        price_near_resistance=False,
    )
    assert not result.changed
    assert result.next_state == SetupState.DIGESTION
    assert result.reason == NO_CHANGE_REASON


def test_expanding_volume_invalidates_digestion() -> None:
    result = determine_next_state(
        SetupState.DIGESTION,
        days_since_shock=2,
        acceptance_candle=True,
        volume_trend=VolumeTrend.EXPANDING,
        price_near_resistance=False,
    )
    assert result.next_state == SetupState.FAILED_RESET
    assert "Volume expanding" in result.reason


def test_resistance_without_decreasing_volume_invalidates_acceptance() -> None:
    failed = determine_next_state(
        SetupState.ACCEPTANCE_READY,
        days_since_shock=2,
        acceptance_candle=True,
        volume_trend=VolumeTrend.FLAT,
        price_near_resistance=True,
    )
    kept = determine_next_state(
        SetupState.ACCEPTANCE_READY,
        days_since_shock=2,
        acceptance_candle=True,
        volume_trend=VolumeTrend.DECREASING,
        price_near_resistance=True,
    )
    assert failed.next_state == SetupState.FAILED_RESET
    assert not kept.changed


def test_trade_active_ignores_age() -> None:
    result = determine_next_state(
        SetupState.TRADE_ACTIVE,
        days_since_shock=12,
        acceptance_candle=False,
        volume_trend=VolumeTrend.EXPANDING,
        price_near_resistance=True,
    )
    assert not result.changed
    assert result.next_state == SetupState.TRADE_ACTIVE


def test_digestion_needs_acceptance_and_decreasing_volume() -> None:
    no_acceptance = determine_next_state(
        SetupState.DIGESTION,
        days_since_shock=2,
        acceptance_candle=False,
        volume_trend=VolumeTrend.DECREASING,
        price_near_resistance=False,
    )
    too_late = determine_next_state(
        SetupState.DIGESTION,
        days_since_shock=5,
        acceptance_candle=True,
        volume_trend=VolumeTrend.DECREASING,
        price_near_resistance=False,
    )
    assert not no_acceptance.changed
    assert not too_late.changed


def test_monday_shock_reaches_acceptance_on_tuesday(tmp_path) -> None:
    journal = _journal(tmp_path)
    setup = _setup(journal)
    machine = SetupStateMachine(journal)

    applied = machine.advance(
        setup,
        days_since_shock=1,
        acceptance_candle=True,
        volume_trend=VolumeTrend.DECREASING,
        price_near_resistance=False,
        now=NOW,
    )

    assert [step.next_state for step in applied] == [SetupState.DIGESTION, SetupState.ACCEPTANCE_READY]
    stored = journal.get_setup(setup.setup_id)
    assert stored is not None
    assert stored.state == SetupState.ACCEPTANCE_READY
    transitions = journal.list_transitions(setup.setup_id)
    assert [(t.previous_state, t.new_state) for t in transitions] == [
        ("SHOCK_DETECTED", "DIGESTION"),
        ("DIGESTION", "ACCEPTANCE_READY"),
    ]
    assert transitions[-1].reason == "Acceptance candle detected, ready for decision"


def test_failed_setup_resets_to_idle_and_deactivates(tmp_path) -> None:
    journal = _journal(tmp_path)
    setup = _setup(journal, SetupState.DIGESTION)
    machine = SetupStateMachine(journal)

    applied = machine.advance(
        setup,
        days_since_shock=7,
        acceptance_candle=False,
        volume_trend=VolumeTrend.FLAT,
        price_near_resistance=False,
        now=NOW,
    )

    assert [step.next_state for step in applied] == [SetupState.FAILED_RESET, SetupState.IDLE]
    assert not setup.active
    assert journal.active_setup_for_symbol("RELIANCE") is None


def test_invalid_transition_is_rejected_without_side_effects(tmp_path) -> None:
    journal = _journal(tmp_path)
    setup = _setup(journal, SetupState.DIGESTION)
    machine = SetupStateMachine(journal)

    with pytest.raises(InvalidTransition):
        machine.transition(setup, SetupState.TRADE_ACTIVE, "skip ahead", NOW)

    assert setup.state == SetupState.DIGESTION
    assert journal.list_transitions(setup.setup_id) == []
    stored = journal.get_setup(setup.setup_id)
    assert stored is not None and stored.state == SetupState.DIGESTION
