from __future__ import annotations

import sqlite3
from pathlib import Path


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row[1]) for row in rows}


def _ensure_column(
    conn: sqlite3.Connection,
    table_name: str,
    column_name: str,
    column_sql: str,
) -> None:
    if column_name in _table_columns(conn, table_name):
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_sql}")


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS setups (
            setup_id TEXT PRIMARY KEY,
            symbol TEXT NOT NULL,
            shock_at TEXT NOT NULL,
            direction TEXT NOT NULL,
            shock_high REAL NOT NULL,
            shock_low REAL NOT NULL,
            volume_multiple REAL NOT NULL,
            state TEXT NOT NULL,
            days_since_shock INTEGER NOT NULL DEFAULT 0,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS state_transitions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            setup_id TEXT NOT NULL,
            previous_state TEXT NOT NULL,
            new_state TEXT NOT NULL,
            reason TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS candles (
            symbol TEXT NOT NULL,
            timeframe TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            open REAL NOT NULL,
            high REAL NOT NULL,
            low REAL NOT NULL,
            close REAL NOT NULL,
            volume REAL NOT NULL DEFAULT 0,
            PRIMARY KEY (symbol, timeframe, timestamp)
        );

        CREATE TABLE IF NOT EXISTS option_quotes (
            symbol TEXT NOT NULL,
            instrument_direction TEXT NOT NULL,
            option_symbol TEXT NOT NULL,
            strike REAL NOT NULL,
            price REAL NOT NULL,
            lot_size INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (symbol, instrument_direction)
        );

        CREATE TABLE IF NOT EXISTS auxiliary_signals (
            symbol TEXT PRIMARY KEY,
            spread_pct REAL NOT NULL,
            oi_alignment TEXT NOT NULL,
            fii_flow TEXT NOT NULL,
            dii_flow TEXT NOT NULL,
            news_risk TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS feature_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            setup_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            features TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS learning_weights (
            feature_name TEXT PRIMARY KEY,
            weight REAL NOT NULL DEFAULT 1.0,
            min_weight REAL NOT NULL DEFAULT 0.5,
            max_weight REAL NOT NULL DEFAULT 1.5,
            update_count INTEGER NOT NULL DEFAULT 0,
            performance_impact REAL NOT NULL DEFAULT 0,
            last_updated TEXT
        );

        CREATE TABLE IF NOT EXISTS calibration_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            trade_id TEXT,
            raw_confidence REAL NOT NULL,
            factor REAL NOT NULL,
            calibrated_confidence REAL NOT NULL,
            outcome TEXT NOT NULL,
            pnl REAL NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS trades (
            trade_id TEXT PRIMARY KEY,
            setup_id TEXT NOT NULL,
            cycle_id TEXT NOT NULL,
            mode TEXT NOT NULL,
            symbol TEXT NOT NULL,
            option_symbol TEXT NOT NULL,
            instrument_direction TEXT NOT NULL,
            strike REAL NOT NULL,
            entry_price REAL NOT NULL,
            entry_time TEXT NOT NULL,
            lots INTEGER NOT NULL,
            capital_used REAL NOT NULL,
            stop_loss REAL NOT NULL,
            raw_confidence REAL NOT NULL,
            calibrated_confidence REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'OPEN',
            exit_price REAL,
            exit_time TEXT,
            exit_reason TEXT,
            pnl REAL,
            pnl_pct REAL,
            features TEXT NOT NULL,
            metadata TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS decisions_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            setup_id TEXT NOT NULL,
            cycle_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            decision TEXT NOT NULL,
            score REAL,
            raw_confidence REAL,
            calibrated_confidence REAL,
            executed INTEGER NOT NULL DEFAULT 0,
            advisory_used INTEGER NOT NULL DEFAULT 0,
            trade_id TEXT,
            reasoning TEXT NOT NULL,
            reason_codes TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS safety_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type TEXT NOT NULL,
            severity TEXT NOT NULL,
            description TEXT NOT NULL,
            action_taken TEXT,
            metadata TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS kill_switch_state (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            is_active INTEGER NOT NULL,
            reason TEXT NOT NULL,
            activated_by TEXT NOT NULL,
            metadata TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS system_config (
            config_key TEXT PRIMARY KEY,
            config_value TEXT NOT NULL,
            updated_by TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_setups_active_symbol ON setups(symbol) WHERE active = 1;
        CREATE INDEX IF NOT EXISTS idx_transitions_setup ON state_transitions(setup_id, id);
        CREATE INDEX IF NOT EXISTS idx_snapshots_setup ON feature_snapshots(setup_id, id);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_snapshots_setup_time ON feature_snapshots(setup_id, created_at);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_trades_setup_cycle ON trades(setup_id, cycle_id);
        CREATE INDEX IF NOT EXISTS idx_trades_mode_status ON trades(mode, status);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_decisions_setup_cycle ON decisions_log(setup_id, cycle_id);
        CREATE INDEX IF NOT EXISTS idx_safety_events_created ON safety_events(created_at);
        CREATE INDEX IF NOT EXISTS idx_calibration_raw ON calibration_history(raw_confidence);
        """
    )
    # Runtime migration support for existing databases.
    _ensure_column(conn, "learning_weights", "decay_periods_applied", "INTEGER NOT NULL DEFAULT 0")
    conn.commit()
