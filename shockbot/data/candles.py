from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd

from shockbot.errors import InsufficientData

# Broker and exchange bhavcopy exports name their columns differently.
_CSV_COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "timestamp": ("timestamp", "date", "datetime", "ts_utc", "trade_date"),
    "open": ("open", "open_price", "o"),
    "high": ("high", "high_price", "h"),
    "low": ("low", "low_price", "l"),
    "close": ("close", "close_price", "last", "c"),
    "volume": ("volume", "traded_volume", "ttl_trd_qnty", "qty", "vol"),
}


@dataclass(slots=True)
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def is_green(self) -> bool:
        return self.close > self.open


def parse_timestamp(value: str) -> datetime:
    normalized = value.replace(" ", "T")
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def candles_from_rows(rows: list[dict[str, Any]]) -> list[Candle]:
    output: list[Candle] = []
    for item in rows:
        ts_raw = item.get("timestamp")
        if ts_raw is None:
            continue
        timestamp = ts_raw if isinstance(ts_raw, datetime) else parse_timestamp(str(ts_raw))
        output.append(
            Candle(
                timestamp=timestamp,
                open=float(item["open"]),
                high=float(item["high"]),
                low=float(item["low"]),
                close=float(item["close"]),
                volume=float(item.get("volume") or 0.0),
            )
        )
    output.sort(key=lambda candle: candle.timestamp)
    return output


def _resolve_columns(frame: pd.DataFrame, csv_path: str | Path) -> dict[str, str]:
    by_lower = {str(name).strip().lower(): name for name in frame.columns}
    resolved: dict[str, str] = {}
    for field_name, aliases in _CSV_COLUMN_ALIASES.items():
        match = next((by_lower[alias] for alias in aliases if alias in by_lower), None)
        if match is not None:
            resolved[field_name] = match
        elif field_name != "volume":
            raise InsufficientData(f"{csv_path}: no {field_name} column (tried {', '.join(aliases)})")
    return resolved


def load_candles_csv(csv_path: str | Path) -> list[Candle]:
    """Daily OHLCV from a CSV export; unparseable rows are dropped, the last duplicate timestamp wins."""
    raw = pd.read_csv(csv_path)
    columns = _resolve_columns(raw, csv_path)
    frame = pd.DataFrame({"timestamp": pd.to_datetime(raw[columns["timestamp"]], utc=True, errors="coerce")})
    for price_field in ("open", "high", "low", "close"):
        frame[price_field] = pd.to_numeric(raw[columns[price_field]], errors="coerce")
    frame["volume"] = (
        pd.to_numeric(raw[columns["volume"]], errors="coerce").fillna(0.0) if "volume" in columns else 0.0
    )
    frame = (
        frame.dropna(subset=["timestamp", "open", "high", "low", "close"])
        .sort_values("timestamp")
        .drop_duplicates(subset=["timestamp"], keep="last")
    )
    return candles_from_rows(
        [{**record, "timestamp": record["timestamp"].to_pydatetime()} for record in frame.to_dict("records")]
    )
