"""N-day high/low breakout detection against live prices."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Mapping, Tuple

from .models import (
    LOOKBACK_WINDOWS,
    BreakoutDirection,
    BreakoutRecord,
    BreakoutResult,
    HistoricalProfile,
)


def _sort_key(record: BreakoutRecord) -> Tuple[Decimal, str]:
    return record.break_percent, record.symbol


def detect_breakouts(
    profiles: Mapping[str, HistoricalProfile],
    live_prices: Mapping[str, Decimal],
) -> BreakoutResult:
    """Compare ``live_prices`` with each profile's trailing highs and lows.

    Both mappings are keyed by storage-form symbol; symbols missing from
    either side are ignored. Break percentages are fractions relative to the
    broken level.
    """

    buckets: Dict[Tuple[BreakoutDirection, int], List[BreakoutRecord]] = {
        (direction, window): [] for direction in BreakoutDirection for window in LOOKBACK_WINDOWS
    }

    for symbol, profile in profiles.items():
        price = live_prices.get(symbol)
        if price is None:
            continue
        for window in LOOKBACK_WINDOWS:
            high = profile.high(window)
            low = profile.low(window)
            if price > high and high > 0:
                buckets[(BreakoutDirection.HIGH, window)].append(
                    BreakoutRecord(
                        symbol=symbol,
                        current_price=price,
                        reference_price=high,
                        direction=BreakoutDirection.HIGH,
                        window=window,
                        break_percent=(price - high) / high,
                    )
                )
            if price < low and low > 0:
                buckets[(BreakoutDirection.LOW, window)].append(
                    BreakoutRecord(
                        symbol=symbol,
                        current_price=price,
                        reference_price=low,
                        direction=BreakoutDirection.LOW,
                        window=window,
                        break_percent=(low - price) / low,
                    )
                )

    ordered = {
        f"break{window}_{direction.value.lower()}": tuple(sorted(records, key=_sort_key, reverse=True))
        for (direction, window), records in buckets.items()
    }
    return BreakoutResult(**ordered)
