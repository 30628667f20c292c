from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, text

from opportunity_app.utils.database import KlineDatabase, create_database_engine
from opportunity_app.utils.errors import DataError

TODAY = date(2024, 3, 15)

ROWS = [
    ("BTC", "2024-03-12 00:00:00", "100", "110", "95", "105", "10", "1000"),
    ("BTC", "2024-03-13 00:00:00", "105", "120", "100", "118", "12", "0"),
    ("BTCUSDT", "2024-03-14 00:00:00", "118", "125", "115", "121", "9", "3000"),
    ("BTC", "2024-03-15 00:00:00", "121", "130", "119", "129", "5", "9000"),
    ("ETHUSDT", "2024-03-14 00:00:00", "3000", "3100", "2900", "3050", "7", "500"),
    (" eth ", "2024-03-13 00:00:00", "2900", "3010", "2890", "3000", "6", "400"),
]


@pytest.fixture()
def database(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'klines.db'}")
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE kline_data (
                    symbol TEXT,
                    open_time TEXT,
                    open_price NUMERIC,
                    high_price NUMERIC,
                    low_price NUMERIC,
                    close_price NUMERIC,
                    volume NUMERIC,
                    quote_volume NUMERIC
                )
                """
            )
        )
        conn.execute(
            text(
                "INSERT INTO kline_data VALUES (:symbol, :open_time, :open, :high, :low, :close, :volume, :qv)"
            ),
            [
                dict(zip(("symbol", "open_time", "open", "high", "low", "close", "volume", "qv"), row))
                for row in ROWS
            ],
        )
    db = KlineDatabase(engine)
    yield db
    db.dispose()


def test_symbols_are_cleaned_and_distinct(database: KlineDatabase) -> None:
    assert set(database.get_all_symbols()) == {"BTC", "BTCUSDT", "ETHUSDT", "ETH"}


def test_daily_candles_match_both_symbol_forms(database: KlineDatabase) -> None:
    candles = database.get_daily_candles("BTCUSDT", date(2024, 3, 12), date(2024, 3, 14))

    assert [candle.open_time for candle in candles] == [
        datetime(2024, 3, day, tzinfo=timezone.utc) for day in (12, 13, 14)
    ]
    assert candles[-1].high == Decimal("125")
    assert candles[0].quote_volume == Decimal("1000")


def test_average_quote_volume_excludes_zero_days_and_today(database: KlineDatabase) -> None:
    average = database.get_average_quote_volume("BTC", 7, TODAY)

    assert average == Decimal("2000")


def test_average_quote_volume_without_history_is_zero(database: KlineDatabase) -> None:
    assert database.get_average_quote_volume("SOLUSDT", 7, TODAY) == Decimal(0)


def test_missing_table_raises_data_error(tmp_path) -> None:
    db = KlineDatabase(create_engine(f"sqlite:///{tmp_path / 'empty.db'}"))

    with pytest.raises(DataError):
        db.get_all_symbols()
    with pytest.raises(DataError):
        db.get_average_quote_volume("BTC", 7, TODAY)


def test_invalid_configuration_is_rejected() -> None:
    with pytest.raises(DataError):
        create_database_engine("")
    with pytest.raises(ValueError):
        KlineDatabase(create_engine("sqlite://"), table="kline_data; DROP TABLE x")
