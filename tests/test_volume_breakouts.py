from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List

import pytest

from opportunity_app.utils.cancellation import CancellationToken
from opportunity_app.utils.errors import DataError, DiscoveryCancelled
from opportunity_app.utils.models import TickerSnapshot
from opportunity_app.utils.volume_breakouts import detect_volume_breakouts

NOW = datetime(2024, 3, 15, 12, tzinfo=timezone.utc)


def make_ticker(symbol: str, quote_volume: str, *, price: str = "10", change: str = "5") -> TickerSnapshot:
    return TickerSnapshot(
        symbol=symbol,
        last_price=Decimal(price),
        price_change_percent=Decimal(change),
        volume_base=Decimal("1"),
        quote_volume=Decimal(quote_volume),
        timestamp=NOW,
    )


class FakeProvider:
    def __init__(self, averages: Dict[str, Decimal], *, failing: set[str] | None = None):
        self.averages = averages
        self.failing = failing or set()
        self.calls: List[str] = []

    async def get_average_volume(self, symbol, days, token=None):
        self.calls.append(symbol)
        if symbol in self.failing:
            raise DataError("db down")
        return self.averages.get(symbol, Decimal(0))


def _detect(tickers, provider, **kwargs):
    kwargs.setdefault("batch_delay", 0)
    return asyncio.run(detect_volume_breakouts(tickers, provider, **kwargs))


def test_volume_above_threshold_is_reported_with_multiplier() -> None:
    provider = FakeProvider({"BTCUSDT": Decimal("1000000"), "ETHUSDT": Decimal("1000000")})
    tickers = [make_ticker("BTCUSDT", "2500000", change="3.5"), make_ticker("ETHUSDT", "1900000")]

    records = _detect(tickers, provider, multiplier_threshold=2.0)

    assert len(records) == 1
    record = records[0]
    assert record.symbol == "BTC"
    assert record.multiplier == Decimal("2.5")
    assert record.change_percent == Decimal("0.035")
    assert record.rank == 1


def test_exactly_at_threshold_is_not_a_breakout() -> None:
    provider = FakeProvider({"BTCUSDT": Decimal("100")})

    assert _detect([make_ticker("BTCUSDT", "200")], provider, multiplier_threshold=2) == []


def test_zero_average_and_provider_errors_exclude_symbol() -> None:
    provider = FakeProvider({"OKUSDT": Decimal("10")}, failing={"BADUSDT"})
    tickers = [make_ticker("NEWUSDT", "999999"), make_ticker("BADUSDT", "999999"), make_ticker("OKUSDT", "50")]

    records = _detect(tickers, provider)

    assert [record.symbol for record in records] == ["OK"]
    assert set(provider.calls) == {"NEWUSDT", "BADUSDT", "OKUSDT"}


def test_ranked_by_multiplier_and_truncated_to_top_k() -> None:
    averages = {f"S{i}USDT": Decimal("100") for i in range(12)}
    tickers = [make_ticker(f"S{i}USDT", str(300 + i * 100)) for i in range(12)]

    records = _detect(tickers, FakeProvider(averages), top_k=5, batch_size=4)

    assert [record.rank for record in records] == [1, 2, 3, 4, 5]
    assert [record.symbol for record in records] == ["S11", "S10", "S9", "S8", "S7"]
    multipliers = [record.multiplier for record in records]
    assert multipliers == sorted(multipliers, reverse=True)


def test_cancellation_between_batches_raises_without_partial_result() -> None:
    token = CancellationToken()

    class CancellingProvider(FakeProvider):
        async def get_average_volume(self, symbol, days, token_=None):
            value = await super().get_average_volume(symbol, days, token_)
            if len(self.calls) == 3:
                token.cancel("stop")
            return value

    provider = CancellingProvider({f"S{i}USDT": Decimal("1") for i in range(9)})
    tickers = [make_ticker(f"S{i}USDT", "100") for i in range(9)]

    with pytest.raises(DiscoveryCancelled):
        _detect(tickers, provider, batch_size=3, token=token)

    assert len(provider.calls) == 3


def test_provider_cancellation_propagates() -> None:
    class CancelledProvider:
        async def get_average_volume(self, symbol, days, token=None):
            raise DiscoveryCancelled("user")

    with pytest.raises(DiscoveryCancelled):
        _detect([make_ticker("BTCUSDT", "100")], CancelledProvider())


def test_cancellation_stops_the_rest_of_the_batch() -> None:
    finished: List[str] = []

    class MixedProvider:
        async def get_average_volume(self, symbol, days, token=None):
            if symbol == "BTCUSDT":
                raise DiscoveryCancelled("user")
            await asyncio.sleep(0.05)
            finished.append(symbol)
            return Decimal("1")

    async def scenario():
        with pytest.raises(DiscoveryCancelled):
            await detect_volume_breakouts(
                [make_ticker("ETHUSDT", "100"), make_ticker("BTCUSDT", "100")],
                MixedProvider(),
                batch_delay=0,
            )
        await asyncio.sleep(0.1)

    asyncio.run(scenario())

    assert finished == []
