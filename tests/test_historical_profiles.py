from __future__ import annotations

import asyncio
import json
import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List

import pytest

from opportunity_app.utils.cancellation import CancellationToken
from opportunity_app.utils.errors import DataError, DiscoveryCancelled, InsufficientHistory
from opportunity_app.utils.historical_profiles import (
    HistoricalProfileCache,
    build_profile,
    profile_file_name,
)
from opportunity_app.utils.models import Candle

TODAY = date(2024, 3, 15)


def make_candles(count: int, *, base: int = 100, volume: str = "1000", end: date = TODAY) -> List[Candle]:
    """``count`` daily candles ending the day before ``end``; highs rise by one per day."""

    candles = []
    first = end - timedelta(days=count)
    for offset in range(count):
        day = first + timedelta(days=offset)
        candles.append(
            Candle(
                open_time=datetime(day.year, day.month, day.day, tzinfo=timezone.utc),
                open=Decimal(base + offset),
                high=Decimal(base + offset + 1),
                low=Decimal(base + offset - 1),
                close=Decimal(base + offset),
                quote_volume=Decimal(volume),
            )
        )
    return candles


class FakeCandleSource:
    def __init__(self, candles: Dict[str, List[Candle]], *, failing: set[str] | None = None):
        self.candles = candles
        self.failing = failing or set()
        self.calls: List[str] = []
        self.symbol_calls = 0
        self._lock = threading.Lock()

    def get_all_symbols(self) -> List[str]:
        self.symbol_calls += 1
        return list(self.candles)

    def get_daily_candles(self, symbol: str, start_date: date, end_date: date) -> List[Candle]:
        with self._lock:
            self.calls.append(symbol)
        if symbol in self.failing:
            raise DataError(f"connection lost while reading {symbol}")
        return [
            candle
            for candle in self.candles[symbol]
            if start_date <= candle.open_time.date() <= end_date
        ]


def make_cache(source, tmp_path, **kwargs) -> HistoricalProfileCache:
    return HistoricalProfileCache(source, cache_dir=tmp_path / "ndayrange", today=lambda: TODAY, **kwargs)


def test_build_profile_windows_and_volume_averages() -> None:
    candles = make_candles(25)
    candles[-1] = Candle(
        open_time=candles[-1].open_time,
        open=Decimal("1"),
        high=Decimal("500"),
        low=Decimal("1"),
        close=Decimal("2"),
        quote_volume=Decimal("0"),
    )

    profile = build_profile("BTC", list(reversed(candles)), TODAY)

    assert profile.high5 == Decimal("500")
    assert profile.low5 == Decimal("1")
    assert profile.high20 == Decimal("500")
    assert profile.low20 == Decimal("1")
    assert profile.high10 == Decimal("500")
    assert profile.avg_quote_volume5 == Decimal("1000")
    assert profile.cache_time == TODAY


def test_build_profile_requires_twenty_candles() -> None:
    with pytest.raises(InsufficientHistory) as excinfo:
        build_profile("NEW", make_candles(19), TODAY)

    assert excinfo.value.available == 19


def test_build_profile_skips_symbol_without_recent_volume() -> None:
    with pytest.raises(InsufficientHistory):
        build_profile("DEAD", make_candles(25, volume="0"), TODAY)


def test_rebuild_filters_by_tradable_and_persists(tmp_path) -> None:
    source = FakeCandleSource(
        {
            "BTC": make_candles(25),
            "ETHUSDT": make_candles(25, base=3000),
            "DOGE": make_candles(25, base=1),
        }
    )
    cache = make_cache(source, tmp_path)

    profiles = asyncio.run(cache.get_profiles({"BTCUSDT", "ETHUSDT"}))

    assert set(profiles) == {"BTC", "ETH"}
    assert "DOGE" not in source.calls
    stored = json.loads((tmp_path / "ndayrange" / profile_file_name(TODAY)).read_text(encoding="utf-8"))
    assert set(stored) == {"BTC", "ETH"}
    assert stored["BTC"]["cacheTime"] == "2024-03-15"


def test_same_day_reload_hits_memory_then_file(tmp_path) -> None:
    source = FakeCandleSource({"BTC": make_candles(25)})
    cache = make_cache(source, tmp_path)

    first = asyncio.run(cache.get_profiles({"BTCUSDT"}))
    calls_after_first = list(source.calls)
    second = asyncio.run(cache.get_profiles({"BTCUSDT"}))

    assert first == second
    assert source.calls == calls_after_first

    restarted = make_cache(FakeCandleSource({}), tmp_path)
    third = asyncio.run(restarted.get_profiles({"BTCUSDT"}))

    assert third == first


def test_one_symbol_failure_does_not_abort_the_rebuild(tmp_path) -> None:
    candles = {f"S{i:02d}": make_candles(25, base=100 + i) for i in range(50)}
    source = FakeCandleSource(candles, failing={"S07"})
    cache = make_cache(source, tmp_path)

    profiles = asyncio.run(cache.get_profiles({f"S{i:02d}USDT" for i in range(50)}))

    assert len(profiles) == 49
    assert "S07" not in profiles


def test_corrupt_file_falls_back_to_rebuild(tmp_path) -> None:
    cache_dir = tmp_path / "ndayrange"
    cache_dir.mkdir()
    (cache_dir / profile_file_name(TODAY)).write_text("{not json", encoding="utf-8")
    source = FakeCandleSource({"BTC": make_candles(25)})

    profiles = asyncio.run(make_cache(source, tmp_path).get_profiles({"BTCUSDT"}))

    assert set(profiles) == {"BTC"}
    assert source.calls == ["BTC"]


def test_file_entries_from_another_day_are_not_served(tmp_path) -> None:
    seed = make_cache(FakeCandleSource({"BTC": make_candles(25)}), tmp_path)
    asyncio.run(seed.get_profiles({"BTCUSDT"}))
    path = tmp_path / "ndayrange" / profile_file_name(TODAY)
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["BTC"]["cacheTime"] = "2024-03-14"
    path.write_text(json.dumps(payload), encoding="utf-8")

    source = FakeCandleSource({"BTC": make_candles(25)})
    asyncio.run(make_cache(source, tmp_path).get_profiles({"BTCUSDT"}))

    assert source.calls == ["BTC"]


def test_empty_rebuild_is_not_persisted(tmp_path) -> None:
    source = FakeCandleSource({"NEW": make_candles(3)})
    cache = make_cache(source, tmp_path)

    assert asyncio.run(cache.get_profiles({"NEWUSDT"})) == {}
    assert not (tmp_path / "ndayrange" / profile_file_name(TODAY)).exists()


def test_cancelled_rebuild_writes_nothing(tmp_path) -> None:
    token = CancellationToken()

    class CancellingSource(FakeCandleSource):
        def get_daily_candles(self, symbol, start_date, end_date):
            token.cancel("user")
            return super().get_daily_candles(symbol, start_date, end_date)

    candles = {f"S{i:02d}": make_candles(25) for i in range(30)}
    cache = make_cache(CancellingSource(candles), tmp_path, batch_size=10)

    with pytest.raises(DiscoveryCancelled):
        asyncio.run(cache.get_profiles({f"S{i:02d}USDT" for i in range(30)}, token))

    assert not (tmp_path / "ndayrange" / profile_file_name(TODAY)).exists()
    assert cache.memory_snapshot() == {}


def test_cleanup_removes_files_older_than_retention(tmp_path) -> None:
    cache_dir = tmp_path / "ndayrange"
    cache_dir.mkdir()
    old = cache_dir / profile_file_name(TODAY - timedelta(days=8))
    recent = cache_dir / profile_file_name(TODAY - timedelta(days=3))
    unrelated = cache_dir / "notes.txt"
    for path in (old, recent, unrelated):
        path.write_text("{}", encoding="utf-8")

    removed = make_cache(FakeCandleSource({}), tmp_path).cleanup_expired()

    assert removed == [old]
    assert recent.exists()
    assert unrelated.exists()


def test_preload_from_before_midnight_is_not_served_after_it(tmp_path) -> None:
    yesterday = TODAY - timedelta(days=1)
    seed = HistoricalProfileCache(
        FakeCandleSource({"BTC": make_candles(25, end=yesterday)}),
        cache_dir=tmp_path / "ndayrange",
        today=lambda: yesterday,
    )
    asyncio.run(seed.get_profiles({"BTCUSDT"}))

    clock = {"day": yesterday}
    source = FakeCandleSource({"BTC": make_candles(25)})
    cache = HistoricalProfileCache(source, cache_dir=tmp_path / "ndayrange", today=lambda: clock["day"])

    preloaded = asyncio.run(cache.preload_today())
    assert {profile.cache_time for profile in preloaded.values()} == {yesterday}
    clock["day"] = TODAY

    profiles = asyncio.run(cache.get_profiles({"BTCUSDT"}, preloaded=preloaded))
    again = asyncio.run(cache.get_profiles({"BTCUSDT"}))

    assert {profile.cache_time for profile in profiles.values()} == {TODAY}
    assert all(profile.cache_time == TODAY for profile in again.values())
    assert source.calls == ["BTC"]
