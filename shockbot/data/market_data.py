from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from shockbot.data.candles import Candle
from shockbot.errors import PersistenceFailure
from shockbot.strategy.contracts import (
    AuxiliarySignals,
    FeatureSnapshot,
    FeatureVector,
    InstitutionalFlow,
    InstrumentDirection,
    NewsRisk,
    OIAlignment,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class OptionQuote:
    option_symbol: str
    instrument_direction: InstrumentDirection
    strike: float
    price: float
    lot_size: int


class MarketDataStore(Protocol):
    def fetch_candles(self, symbol: str, timeframe: str, count: int) -> list[Candle]:
        """Oldest first."""

    def fetch_auxiliary_signals(self, symbol: str) -> AuxiliarySignals:
        ...

    def fetch_option_quote(
        self,
        symbol: str,
        direction: InstrumentDirection,
        strike_preference: str,
    ) -> OptionQuote | None:
        ...

    def save_feature_snapshot(self, snapshot: FeatureSnapshot) -> int:
        ...

    def is_healthy(self) -> bool:
        ...


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


class SqliteMarketDataStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()
        self._healthy = True

    def _read(self, action: str, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self.lock:
            try:
                rows = self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                self._healthy = False
                raise PersistenceFailure(f"{action} failed: {exc}") from exc
        self._healthy = True
        return rows

    def upsert_candles(self, symbol: str, timeframe: str, candles: list[Candle]) -> int:
        rows = [
            (symbol, timeframe, _iso(c.timestamp), c.open, c.high, c.low, c.close, c.volume)
            for c in candles
        ]
        with self.lock:
            try:
                with self.conn:
                    self.conn.executemany(
                        """
                        INSERT INTO candles (symbol, timeframe, timestamp, open, high, low, close, volume)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(symbol, timeframe, timestamp) DO UPDATE SET
                            open=excluded.open,
                            high=excluded.high,
                            low=excluded.low,
                            close=excluded.close,
                            volume=excluded.volume
                        """,
                        rows,
                    )
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"store candles failed: {exc}") from exc
        LOGGER.info("Stored %s %s candles for %s", len(rows), timeframe, symbol)
        return len(rows)

    def fetch_candles(self, symbol: str, timeframe: str, count: int) -> list[Candle]:
        rows = self._read(
            "fetch candles",
            """
            SELECT * FROM candles WHERE symbol = ? AND timeframe = ?
            ORDER BY timestamp DESC LIMIT ?
            """,
            (symbol, timeframe, int(count)),
        )
        candles = [
            Candle(
                timestamp=datetime.fromisoformat(row["timestamp"]),
                open=float(row["open"]),
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                volume=float(row["volume"]),
            )
            for row in rows
        ]
        candles.reverse()
        return candles

    def upsert_option_quote(self, symbol: str, quote: OptionQuote, now: datetime) -> None:
        with self.lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO option_quotes (
                            symbol, instrument_direction, option_symbol, strike, price, lot_size, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(symbol, instrument_direction) DO UPDATE SET
                            option_symbol=excluded.option_symbol,
                            strike=excluded.strike,
                            price=excluded.price,
                            lot_size=excluded.lot_size,
                            updated_at=excluded.updated_at
                        """,
                        (
                            symbol,
                            quote.instrument_direction.value,
                            quote.option_symbol,
                            quote.strike,
                            quote.price,
                            int(quote.lot_size),
                            _iso(now),
                        ),
                    )
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"store option quote failed: {exc}") from exc

    def fetch_option_quote(
        self,
        symbol: str,
        direction: InstrumentDirection,
        strike_preference: str,
    ) -> OptionQuote | None:
        # Only ATM quotes are stored.
        if strike_preference != "ATM":
            return None
        rows = self._read(
            "fetch option quote",
            "SELECT * FROM option_quotes WHERE symbol = ? AND instrument_direction = ?",
            (symbol, direction.value),
        )
        if not rows:
            return None
        row = rows[0]
        return OptionQuote(
            option_symbol=str(row["option_symbol"]),
            instrument_direction=InstrumentDirection(row["instrument_direction"]),
            strike=float(row["strike"]),
            price=float(row["price"]),
            lot_size=int(row["lot_size"]),
        )

    def quote_by_option_symbol(self, option_symbol: str) -> OptionQuote | None:
        rows = self._read(
            "fetch option quote",
            "SELECT * FROM option_quotes WHERE option_symbol = ?",
            (option_symbol,),
        )
        if not rows:
            return None
        row = rows[0]
        return OptionQuote(
            option_symbol=str(row["option_symbol"]),
            instrument_direction=InstrumentDirection(row["instrument_direction"]),
            strike=float(row["strike"]),
            price=float(row["price"]),
            lot_size=int(row["lot_size"]),
        )

    def upsert_auxiliary_signals(self, symbol: str, signals: AuxiliarySignals, now: datetime) -> None:
        with self.lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO auxiliary_signals (
                            symbol, spread_pct, oi_alignment, fii_flow, dii_flow, news_risk, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(symbol) DO UPDATE SET
                            spread_pct=excluded.spread_pct,
                            oi_alignment=excluded.oi_alignment,
                            fii_flow=excluded.fii_flow,
                            dii_flow=excluded.dii_flow,
                            news_risk=excluded.news_risk,
                            updated_at=excluded.updated_at
                        """,
                        (
                            symbol,
                            signals.spread_pct,
                            signals.oi_alignment.value,
                            signals.fii_flow.value,
                            signals.dii_flow.value,
                            signals.news_risk.value,
                            _iso(now),
                        ),
                    )
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"store auxiliary signals failed: {exc}") from exc

    def fetch_auxiliary_signals(self, symbol: str) -> AuxiliarySignals:
        rows = self._read("fetch auxiliary signals", "SELECT * FROM auxiliary_signals WHERE symbol = ?", (symbol,))
        if not rows:
            return AuxiliarySignals()
        row = rows[0]
        return AuxiliarySignals(
            spread_pct=float(row["spread_pct"]),
            oi_alignment=OIAlignment(row["oi_alignment"]),
            fii_flow=InstitutionalFlow(row["fii_flow"]),
            dii_flow=InstitutionalFlow(row["dii_flow"]),
            news_risk=NewsRisk(row["news_risk"]),
        )

    def save_feature_snapshot(self, snapshot: FeatureSnapshot) -> int:
        """One snapshot per setup and evaluation time; a repeat save returns the stored row id."""
        created_at = _iso(snapshot.created_at)
        with self.lock:
            try:
                with self.conn:
                    cursor = self.conn.execute(
                        "INSERT OR IGNORE INTO feature_snapshots (setup_id, created_at, features) VALUES (?, ?, ?)",
                        (snapshot.setup_id, created_at, json.dumps(snapshot.features.to_dict())),
                    )
                    if cursor.rowcount:
                        return int(cursor.lastrowid)
                    row = self.conn.execute(
                        "SELECT id FROM feature_snapshots WHERE setup_id = ? AND created_at = ?",
                        (snapshot.setup_id, created_at),
                    ).fetchone()
            except sqlite3.Error as exc:
                raise PersistenceFailure(f"store feature snapshot failed: {exc}") from exc
        LOGGER.debug("Feature snapshot for %s at %s already stored", snapshot.setup_id, created_at)
        return int(row["id"])

    def latest_feature_snapshot(self, setup_id: str) -> FeatureSnapshot | None:
        rows = self._read(
            "fetch feature snapshot",
            "SELECT * FROM feature_snapshots WHERE setup_id = ? ORDER BY id DESC LIMIT 1",
            (setup_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return FeatureSnapshot(
            snapshot_id=int(row["id"]),
            setup_id=str(row["setup_id"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            features=FeatureVector.from_dict(json.loads(row["features"])),
        )

    def is_healthy(self) -> bool:
        return self._healthy
