from __future__ import annotations

import asyncio
import json
from datetime import date, timedelta
from decimal import Decimal

from opportunity_app.utils.volume_average import AverageVolumeProvider, volume_file_name

TODAY = date(2024, 3, 15)


class FakeVolumeSource:
    def __init__(self, values, *, error: Exception | None = None):
        self.values = values
        self.error = error
        self.calls = []

    def get_average_quote_volume(self, symbol, days, today):
        self.calls.append((symbol, days, today))
        if self.error is not None:
            raise self.error
        return self.values.get(symbol, Decimal(0))


def make_provider(source, tmp_path, today=TODAY) -> AverageVolumeProvider:
    return AverageVolumeProvider(source, cache_dir=tmp_path / "volume", today=lambda: today)


def test_average_is_memoised_per_day(tmp_path) -> None:
    source = FakeVolumeSource({"BTCUSDT": Decimal("1500.5")})
    provider = make_provider(source, tmp_path)

    async def scenario():
        first = await provider.get_average_volume("BTCUSDT", 7)
        second = await provider.get_average_volume("BTC", 7)
        return first, second

    assert asyncio.run(scenario()) == (Decimal("1500.5"), Decimal("1500.5"))
    assert len(source.calls) == 1


def test_zero_average_is_not_memoised(tmp_path) -> None:
    source = FakeVolumeSource({})
    provider = make_provider(source, tmp_path)

    asyncio.run(provider.get_average_volume("NEWUSDT", 7))
    asyncio.run(provider.get_average_volume("NEWUSDT", 7))

    assert len(source.calls) == 2
    assert provider.flush() == []


def test_flush_writes_day_file_and_restart_reads_it(tmp_path) -> None:
    source = FakeVolumeSource({"BTCUSDT": Decimal("1000"), "ETHUSDT": Decimal("250.25")})
    provider = make_provider(source, tmp_path)
    asyncio.run(provider.get_average_volume("BTCUSDT", 7))
    asyncio.run(provider.get_average_volume("ETHUSDT", 7))

    written = provider.flush()

    path = tmp_path / "volume" / volume_file_name(7, TODAY)
    assert written == [path]
    assert path.name == "avg_volume_7days_20240315.json"
    assert json.loads(path.read_text(encoding="utf-8")) == {"BTC": "1000", "ETH": "250.25"}

    restarted_source = FakeVolumeSource({})
    restarted = make_provider(restarted_source, tmp_path)
    assert asyncio.run(restarted.get_average_volume("BTCUSDT", 7)) == Decimal("1000")
    assert restarted_source.calls == []


def test_source_error_yields_zero(tmp_path) -> None:
    provider = make_provider(FakeVolumeSource({}, error=RuntimeError("db gone")), tmp_path)

    assert asyncio.run(provider.get_average_volume("BTCUSDT", 7)) == Decimal(0)


def test_cleanup_removes_files_from_previous_days(tmp_path) -> None:
    cache_dir = tmp_path / "volume"
    cache_dir.mkdir()
    old = cache_dir / volume_file_name(7, TODAY - timedelta(days=1))
    current = cache_dir / volume_file_name(7, TODAY)
    other = cache_dir / "avg_volume_notes.json"
    for path in (old, current, other):
        path.write_text("{}", encoding="utf-8")

    removed = make_provider(FakeVolumeSource({}), tmp_path).cleanup_expired()

    assert removed == [old]
    assert current.exists()
    assert other.exists()


def test_preload_reads_day_file_once_and_keeps_fresher_values(tmp_path) -> None:
    cache_dir = tmp_path / "volume"
    cache_dir.mkdir()
    (cache_dir / volume_file_name(7, TODAY)).write_text(
        json.dumps({"BTC": "1000", "ETH": "250"}), encoding="utf-8"
    )
    source = FakeVolumeSource({"SOLUSDT": Decimal("90")})
    provider = make_provider(source, tmp_path)
    reads = []
    original = provider._load_file

    def counting_load(key):
        reads.append(key)
        return original(key)

    provider._load_file = counting_load
    provider._memo[(7, TODAY)] = {"ETH": Decimal("300")}

    async def scenario():
        await provider.preload(7)
        await provider.preload(7)
        await provider.get_average_volume("SOLUSDT", 7)
        return await provider.get_average_volume("BTCUSDT", 7), await provider.get_average_volume("ETH", 7)

    assert asyncio.run(scenario()) == (Decimal("1000"), Decimal("300"))
    assert reads == [(7, TODAY)]
    assert source.calls == [("SOLUSDT", 7, TODAY)]
