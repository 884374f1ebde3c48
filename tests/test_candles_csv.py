from __future__ import annotations

from datetime import datetime, timezone

import pytest

from shockbot.data.candles import candles_from_rows, load_candles_csv
from shockbot.data.market_data import SqliteMarketDataStore
from shockbot.errors import InsufficientData
from shockbot.storage.db import get_connection, init_db
from shockbot.strategy.contracts import AuxiliarySignals, InstitutionalFlow, NewsRisk, OIAlignment


def test_csv_loader_normalizes_columns(tmp_path) -> None:
    path = tmp_path / "tcs.csv"
    path.write_text(
        "Date,Open,High,Low,Close,Volume\n"
        "2026-01-06,101,103,100,102,1500\n"
        "2026-01-05,100,102,99,101,1200\n"
        "not-a-date,1,1,1,1,1\n"
        "2026-01-06,101,104,100,103,1600\n",
        encoding="utf-8",
    )

    candles = load_candles_csv(path)

    assert [candle.timestamp for candle in candles] == [
        datetime(2026, 1, 5, tzinfo=timezone.utc),
        datetime(2026, 1, 6, tzinfo=timezone.utc),
    ]
    assert candles[-1].close == 103.0
    assert candles[-1].volume == 1600.0


def test_csv_without_volume_defaults_to_zero(tmp_path) -> None:
    path = tmp_path / "infy.csv"
    path.write_text("timestamp,o,h,l,c\n2026-01-05T09:15:00Z,10,11,9,10.5\n", encoding="utf-8")

    candles = load_candles_csv(path)

    assert len(candles) == 1
    assert candles[0].volume == 0.0
    assert candles[0].is_green


def test_imported_candles_round_trip_through_store(tmp_path) -> None:
    conn = get_connection(tmp_path / "candles.db")
    init_db(conn)
    store = SqliteMarketDataStore(conn)
    candles = candles_from_rows(
        [
            {"timestamp": "2026-01-06T10:00:00Z", "open": 2, "high": 3, "low": 1, "close": 2.5, "volume": 10},
            {"timestamp": "2026-01-05T10:00:00Z", "open": 1, "high": 2, "low": 0.5, "close": 1.5, "volume": 20},
            {"open": 9, "high": 9, "low": 9, "close": 9},
        ]
    )

    assert store.upsert_candles("TCS", "D1", candles) == 2
    stored = store.fetch_candles("TCS", "D1", 1)

    assert len(stored) == 1
    assert stored[0].close == 2.5
    assert store.fetch_candles("TCS", "D1", 10)[0].close == 1.5
    assert store.is_healthy()


def test_auxiliary_signals_default_to_neutral(tmp_path) -> None:
    conn = get_connection(tmp_path / "signals.db")
    init_db(conn)
    store = SqliteMarketDataStore(conn)

    assert store.fetch_auxiliary_signals("TCS") == AuxiliarySignals()

    stored = AuxiliarySignals(
        spread_pct=0.4,
        oi_alignment=OIAlignment.NOT_ALIGNED,
        fii_flow=InstitutionalFlow.STRONG_SELL,
        dii_flow=InstitutionalFlow.BUY,
        news_risk=NewsRisk.HIGH,
    )
    store.upsert_auxiliary_signals("TCS", stored, datetime(2026, 3, 3, tzinfo=timezone.utc))

    assert store.fetch_auxiliary_signals("TCS") == stored


def test_csv_without_close_column_is_rejected(tmp_path) -> None:
    path = tmp_path / "broken.csv"
    path.write_text("trade_date,open_price,high_price,low_price\n2026-01-05,1,2,0.5\n", encoding="utf-8")

    with pytest.raises(InsufficientData):
        load_candles_csv(path)
