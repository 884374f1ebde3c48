from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from shockbot.errors import PersistenceFailure, TransitionLogFailure
from shockbot.storage.models import (
    CalibrationSample,
    DecisionRecord,
    KillSwitchRecord,
    LearningWeight,
    SafetyEventRecord,
    TradeRecord,
    TransitionRecord,
)
from shockbot.strategy.contracts import Setup, SetupState, ShockDirection


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _setup_from_row(row: sqlite3.Row) -> Setup:
    return Setup(
        setup_id=str(row["setup_id"]),
        symbol=str(row["symbol"]),
        shock_at=_from_iso(row["shock_at"]),
        direction=ShockDirection(row["direction"]),
        shock_high=float(row["shock_high"]),
        shock_low=float(row["shock_low"]),
        volume_multiple=float(row["volume_multiple"]),
        state=SetupState(row["state"]),
        days_since_shock=int(row["days_since_shock"]),
        active=bool(row["active"]),
        created_at=_from_iso(row["created_at"]),
        updated_at=_from_iso(row["updated_at"]),
    )


def _trade_from_row(row: sqlite3.Row) -> TradeRecord:
    return TradeRecord(
        trade_id=str(row["trade_id"]),
        setup_id=str(row["setup_id"]),
        cycle_id=str(row["cycle_id"]),
        mode=str(row["mode"]),
        symbol=str(row["symbol"]),
        option_symbol=str(row["option_symbol"]),
        instrument_direction=str(row["instrument_direction"]),
        strike=float(row["strike"]),
        entry_price=float(row["entry_price"]),
        entry_time=_from_iso(row["entry_time"]),
        lots=int(row["lots"]),
        capital_used=float(row["capital_used"]),
        stop_loss=float(row["stop_loss"]),
        raw_confidence=float(row["raw_confidence"]),
        calibrated_confidence=float(row["calibrated_confidence"]),
        status=str(row["status"]),
        exit_price=float(row["exit_price"]) if row["exit_price"] is not None else None,
        exit_time=_from_iso(row["exit_time"]),
        exit_reason=row["exit_reason"],
        pnl=float(row["pnl"]) if row["pnl"] is not None else None,
        pnl_pct=float(row["pnl_pct"]) if row["pnl_pct"] is not None else None,
        features=json.loads(row["features"]),
        metadata=json.loads(row["metadata"]),
    )


def _safety_event_from_row(row: sqlite3.Row) -> SafetyEventRecord:
    return SafetyEventRecord(
        event_id=int(row["id"]),
        event_type=str(row["event_type"]),
        severity=str(row["severity"]),
        description=str(row["description"]),
        action_taken=row["action_taken"],
        metadata=json.loads(row["metadata"]),
        created_at=_from_iso(row["created_at"]),
    )


class Journal:
    """SQLite-backed trade ledger, event log and engine state."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        with self.lock:
            try:
                with self.conn:
                    yield self.conn
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"{action} failed: {exc}") from exc

    def _fetchall(self, action: str, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self.lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"{action} failed: {exc}") from exc

    def _fetchone(self, action: str, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        rows = self._fetchall(action, sql, params)
        return rows[0] if rows else None

    # Setups -----------------------------------------------------------------

    def create_setup(self, setup: Setup) -> None:
        with self._transaction("create setup") as conn:
            conn.execute(
                """
                INSERT INTO setups (
                    setup_id, symbol, shock_at, direction, shock_high, shock_low, volume_multiple,
                    state, days_since_shock, active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    setup.setup_id,
                    setup.symbol,
                    _to_iso(setup.shock_at),
                    setup.direction.value,
                    setup.shock_high,
                    setup.shock_low,
                    setup.volume_multiple,
                    setup.state.value,
                    setup.days_since_shock,
                    int(setup.active),
                    _to_iso(setup.created_at),
                    _to_iso(setup.updated_at or setup.created_at),
                ),
            )

    def get_setup(self, setup_id: str) -> Setup | None:
        row = self._fetchone("get setup", "SELECT * FROM setups WHERE setup_id = ?", (setup_id,))
        return _setup_from_row(row) if row is not None else None

    def active_setup_for_symbol(self, symbol: str) -> Setup | None:
        row = self._fetchone(
            "get active setup",
            "SELECT * FROM setups WHERE symbol = ? AND active = 1",
            (symbol,),
        )
        return _setup_from_row(row) if row is not None else None

    def list_active_setups(self, states: list[SetupState] | None = None) -> list[Setup]:
        rows = self._fetchall(
            "list active setups",
            "SELECT * FROM setups WHERE active = 1 ORDER BY created_at ASC, setup_id ASC",
        )
        setups = [_setup_from_row(row) for row in rows]
        if states is None:
            return setups
        wanted = set(states)
        return [setup for setup in setups if setup.state in wanted]

    def update_setup_days(self, setup_id: str, days_since_shock: int, now: datetime) -> None:
        with self._transaction("update setup days") as conn:
            conn.execute(
                "UPDATE setups SET days_since_shock = ?, updated_at = ? WHERE setup_id = ?",
                (int(days_since_shock), _to_iso(now), setup_id),
            )

    def record_transition(
        self,
        setup_id: str,
        previous_state: SetupState,
        new_state: SetupState,
        reason: str,
        now: datetime,
        *,
        active: bool,
    ) -> None:
        """Audit row and setup update commit together or not at all."""
        with self.lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO state_transitions (setup_id, previous_state, new_state, reason, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (setup_id, previous_state.value, new_state.value, reason, _to_iso(now)),
                    )
                    cursor = self.conn.execute(
                        "UPDATE setups SET state = ?, active = ?, updated_at = ? WHERE setup_id = ?",
                        (new_state.value, int(active), _to_iso(now), setup_id),
                    )
                    if cursor.rowcount != 1:
                        raise sqlite3.IntegrityError(f"setup {setup_id} not found")
            except sqlite3.Error as exc:
                raise TransitionLogFailure(
                    f"Transition {previous_state.value} -> {new_state.value} for {setup_id} not recorded: {exc}"
                ) from exc

    def list_transitions(self, setup_id: str) -> list[TransitionRecord]:
        rows = self._fetchall(
            "list transitions",
            "SELECT * FROM state_transitions WHERE setup_id = ? ORDER BY id ASC",
            (setup_id,),
        )
        return [
            TransitionRecord(
                setup_id=str(row["setup_id"]),
                previous_state=str(row["previous_state"]),
                new_state=str(row["new_state"]),
                reason=str(row["reason"]),
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    # Learning weights -------------------------------------------------------

    def load_learning_weights(self) -> dict[str, LearningWeight]:
        rows = self._fetchall("load learning weights", "SELECT * FROM learning_weights")
        return {
            str(row["feature_name"]): LearningWeight(
                feature_name=str(row["feature_name"]),
                weight=float(row["weight"]),
                min_weight=float(row["min_weight"]),
                max_weight=float(row["max_weight"]),
                update_count=int(row["update_count"]),
                performance_impact=float(row["performance_impact"]),
                last_updated=_from_iso(row["last_updated"]),
                decay_periods_applied=int(row["decay_periods_applied"]),
            )
            for row in rows
        }

    def upsert_learning_weight(self, weight: LearningWeight) -> None:
        with self._transaction("upsert learning weight") as conn:
            conn.execute(
                """
                INSERT INTO learning_weights (
                    feature_name, weight, min_weight, max_weight, update_count,
                    performance_impact, last_updated, decay_periods_applied
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(feature_name) DO UPDATE SET
                    weight=excluded.weight,
                    min_weight=excluded.min_weight,
                    max_weight=excluded.max_weight,
                    update_count=excluded.update_count,
                    performance_impact=excluded.performance_impact,
                    last_updated=excluded.last_updated,
                    decay_periods_applied=excluded.decay_periods_applied
                """,
                (
                    weight.feature_name,
                    weight.weight,
                    weight.min_weight,
                    weight.max_weight,
                    weight.update_count,
                    weight.performance_impact,
                    _to_iso(weight.last_updated),
                    weight.decay_periods_applied,
                ),
            )

    # Calibration ------------------------------------------------------------

    def insert_calibration_sample(self, sample: CalibrationSample) -> None:
        with self._transaction("insert calibration sample") as conn:
            conn.execute(
                """
                INSERT INTO calibration_history (
                    trade_id, raw_confidence, factor, calibrated_confidence, outcome, pnl, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sample.trade_id,
                    sample.raw_confidence,
                    sample.factor,
                    sample.calibrated_confidence,
                    sample.outcome,
                    sample.pnl,
                    _to_iso(sample.created_at),
                ),
            )

    def calibration_samples(
        self,
        *,
        limit: int,
        min_raw: float | None = None,
        max_raw: float | None = None,
    ) -> list[CalibrationSample]:
        sql = "SELECT * FROM calibration_history"
        params: list[Any] = []
        if min_raw is not None and max_raw is not None:
            sql += " WHERE raw_confidence >= ? AND raw_confidence <= ?"
            params.extend([min_raw, max_raw])
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        rows = self._fetchall("read calibration samples", sql, tuple(params))
        return [
            CalibrationSample(
                trade_id=row["trade_id"],
                raw_confidence=float(row["raw_confidence"]),
                factor=float(row["factor"]),
                calibrated_confidence=float(row["calibrated_confidence"]),
                outcome=str(row["outcome"]),
                pnl=float(row["pnl"]),
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    # Trades -----------------------------------------------------------------

    def record_trade(self, trade: TradeRecord) -> None:
        with self._transaction("record trade") as conn:
            conn.execute(
                """
                INSERT INTO trades (
                    trade_id, setup_id, cycle_id, mode, symbol, option_symbol, instrument_direction, strike,
                    entry_price, entry_time, lots, capital_used, stop_loss, raw_confidence,
                    calibrated_confidence, status, exit_price, exit_time, exit_reason, pnl, pnl_pct,
                    features, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.trade_id,
                    trade.setup_id,
                    trade.cycle_id,
                    trade.mode,
                    trade.symbol,
                    trade.option_symbol,
                    trade.instrument_direction,
                    trade.strike,
                    trade.entry_price,
                    _to_iso(trade.entry_time),
                    trade.lots,
                    trade.capital_used,
                    trade.stop_loss,
                    trade.raw_confidence,
                    trade.calibrated_confidence,
                    trade.status,
                    trade.exit_price,
                    _to_iso(trade.exit_time),
                    trade.exit_reason,
                    trade.pnl,
                    trade.pnl_pct,
                    json.dumps(trade.features),
                    json.dumps(trade.metadata),
                ),
            )

    def update_trade(
        self,
        trade_id: str,
        *,
        exit_price: float,
        exit_time: datetime,
        exit_reason: str,
        pnl: float,
        pnl_pct: float,
    ) -> None:
        with self._transaction("update trade") as conn:
            cursor = conn.execute(
                """
                UPDATE trades
                SET status = 'CLOSED', exit_price = ?, exit_time = ?, exit_reason = ?, pnl = ?, pnl_pct = ?
                WHERE trade_id = ? AND status = 'OPEN'
                """,
                (exit_price, _to_iso(exit_time), exit_reason, pnl, pnl_pct, trade_id),
            )
            if cursor.rowcount != 1:
                raise sqlite3.IntegrityError(f"open trade {trade_id} not found")

    def get_trade(self, trade_id: str) -> TradeRecord | None:
        row = self._fetchone("get trade", "SELECT * FROM trades WHERE trade_id = ?", (trade_id,))
        return _trade_from_row(row) if row is not None else None

    def trade_for_setup_cycle(self, setup_id: str, cycle_id: str) -> TradeRecord | None:
        row = self._fetchone(
            "get trade by setup/cycle",
            "SELECT * FROM trades WHERE setup_id = ? AND cycle_id = ?",
            (setup_id, cycle_id),
        )
        return _trade_from_row(row) if row is not None else None

    def open_trades(self, mode: str | None = None) -> list[TradeRecord]:
        if mode is None:
            rows = self._fetchall("list open trades", "SELECT * FROM trades WHERE status = 'OPEN' ORDER BY entry_time")
        else:
            rows = self._fetchall(
                "list open trades",
                "SELECT * FROM trades WHERE status = 'OPEN' AND mode = ? ORDER BY entry_time",
                (mode,),
            )
        return [_trade_from_row(row) for row in rows]

    def trades_entered_between(self, mode: str, start: datetime, end: datetime) -> list[TradeRecord]:
        rows = self._fetchall(
            "list trades by entry time",
            "SELECT * FROM trades WHERE mode = ? AND entry_time >= ? AND entry_time < ? ORDER BY entry_time",
            (mode, _to_iso(start), _to_iso(end)),
        )
        return [_trade_from_row(row) for row in rows]

    def trades_closed_between(self, mode: str, start: datetime, end: datetime) -> list[TradeRecord]:
        rows = self._fetchall(
            "list trades by exit time",
            """
            SELECT * FROM trades
            WHERE mode = ? AND status = 'CLOSED' AND exit_time >= ? AND exit_time < ?
            ORDER BY exit_time
            """,
            (mode, _to_iso(start), _to_iso(end)),
        )
        return [_trade_from_row(row) for row in rows]

    def recent_closed_trades(self, mode: str, limit: int) -> list[TradeRecord]:
        """Newest first."""
        rows = self._fetchall(
            "list recent closed trades",
            "SELECT * FROM trades WHERE mode = ? AND status = 'CLOSED' ORDER BY exit_time DESC LIMIT ?",
            (mode, int(limit)),
        )
        return [_trade_from_row(row) for row in rows]

    # Decisions --------------------------------------------------------------

    def record_decision(self, record: DecisionRecord) -> bool:
        """Returns False when a decision for the same setup and cycle already exists."""
        with self._transaction("record decision") as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO decisions_log (
                    setup_id, cycle_id, symbol, decision, score, raw_confidence, calibrated_confidence,
                    executed, advisory_used, trade_id, reasoning, reason_codes, payload, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.setup_id,
                    record.cycle_id,
                    record.symbol,
                    record.decision,
                    record.score,
                    record.raw_confidence,
                    record.calibrated_confidence,
                    int(record.executed),
                    int(record.advisory_used),
                    record.trade_id,
                    record.reasoning,
                    json.dumps(record.reason_codes),
                    json.dumps(record.payload),
                    _to_iso(record.created_at),
                ),
            )
            return cursor.rowcount == 1

    def decision_exists(self, setup_id: str, cycle_id: str) -> bool:
        row = self._fetchone(
            "check decision",
            "SELECT 1 FROM decisions_log WHERE setup_id = ? AND cycle_id = ?",
            (setup_id, cycle_id),
        )
        return row is not None

    def list_decisions(self, cycle_id: str | None = None) -> list[DecisionRecord]:
        if cycle_id is None:
            rows = self._fetchall("list decisions", "SELECT * FROM decisions_log ORDER BY id")
        else:
            rows = self._fetchall(
                "list decisions",
                "SELECT * FROM decisions_log WHERE cycle_id = ? ORDER BY id",
                (cycle_id,),
            )
        return [
            DecisionRecord(
                setup_id=str(row["setup_id"]),
                cycle_id=str(row["cycle_id"]),
                symbol=str(row["symbol"]),
                decision=str(row["decision"]),
                score=row["score"],
                raw_confidence=row["raw_confidence"],
                calibrated_confidence=row["calibrated_confidence"],
                executed=bool(row["executed"]),
                advisory_used=bool(row["advisory_used"]),
                trade_id=row["trade_id"],
                reasoning=str(row["reasoning"]),
                reason_codes=json.loads(row["reason_codes"]),
                payload=json.loads(row["payload"]),
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    # Safety events and kill switch -----------------------------------------

    def log_safety_event(self, event: SafetyEventRecord) -> None:
        with self._transaction("log safety event") as conn:
            conn.execute(
                """
                INSERT INTO safety_events (event_type, severity, description, action_taken, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_type,
                    event.severity,
                    event.description,
                    event.action_taken,
                    json.dumps(event.metadata),
                    _to_iso(event.created_at),
                ),
            )

    def safety_events(
        self,
        *,
        since: datetime | None = None,
        severity: str | None = None,
    ) -> list[SafetyEventRecord]:
        sql = "SELECT * FROM safety_events WHERE 1 = 1"
        params: list[Any] = []
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(_to_iso(since))
        if severity is not None:
            sql += " AND severity = ?"
            params.append(severity)
        sql += " ORDER BY id ASC"
        return [_safety_event_from_row(row) for row in self._fetchall("list safety events", sql, tuple(params))]

    def append_kill_switch(self, record: KillSwitchRecord) -> None:
        with self._transaction("append kill switch record") as conn:
            conn.execute(
                """
                INSERT INTO kill_switch_state (is_active, reason, activated_by, metadata, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    int(record.is_active),
                    record.reason,
                    record.activated_by,
                    json.dumps(record.metadata),
                    _to_iso(record.created_at),
                ),
            )

    def latest_kill_switch(self) -> KillSwitchRecord | None:
        row = self._fetchone(
            "read kill switch",
            "SELECT * FROM kill_switch_state ORDER BY id DESC LIMIT 1",
        )
        if row is None:
            return None
        return KillSwitchRecord(
            is_active=bool(row["is_active"]),
            reason=str(row["reason"]),
            activated_by=str(row["activated_by"]),
            metadata=json.loads(row["metadata"]),
            created_at=_from_iso(row["created_at"]),
        )

    # Runtime configuration --------------------------------------------------

    def get_config_values(self) -> dict[str, Any]:
        rows = self._fetchall("read system config", "SELECT config_key, config_value FROM system_config")
        return {str(row["config_key"]): json.loads(row["config_value"]) for row in rows}

    def set_config_value(self, key: str, value: Any, *, updated_by: str, now: datetime) -> None:
        with self._transaction("write system config") as conn:
            conn.execute(
                """
                INSERT INTO system_config (config_key, config_value, updated_by, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value=excluded.config_value,
                    updated_by=excluded.updated_by,
                    updated_at=excluded.updated_at
                """,
                (key, json.dumps(value), updated_by, _to_iso(now)),
            )
