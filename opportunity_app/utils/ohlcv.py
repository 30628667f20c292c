"""Helpers for working with daily candle frames read from the kline database.

Rows arrive with heterogeneous ``open_time`` encodings depending on how the
table was populated: ``DATETIME`` columns, epoch milliseconds or ISO strings.
Naive values are interpreted as UTC so that ordering and the trailing windows
do not depend on the host timezone.

``normalise_ohlcv_frame``
    Parses the timestamp column into ``datetime64[ns, UTC]``, drops rows with
    an unparsable timestamp and returns the frame sorted ascending and
    de-duplicated (the last row for a repeated open time wins).

``frame_to_candles``
    Converts a normalised frame into :class:`~.models.Candle` values keeping
    exact decimal prices.

``trailing_range`` / ``trailing_average_volume``
    Window statistics over the most recent candles.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, List, Sequence

import numpy as np
import pandas as pd

from .models import Candle, to_decimal

__all__ = [
    "CANDLE_COLUMNS",
    "frame_to_candles",
    "normalise_ohlcv_frame",
    "trailing_average_volume",
    "trailing_range",
]

CANDLE_COLUMNS = ("open_time", "open", "high", "low", "close", "quote_volume")


def _parse_timestamps(raw: pd.Series) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(raw):
        return pd.to_datetime(raw, utc=True, errors="coerce")

    timestamps = pd.Series(pd.NaT, index=raw.index, dtype="datetime64[ns, UTC]")

    numeric = pd.to_numeric(raw, errors="coerce")
    if numeric.notna().any():
        abs_values = numeric.abs()
        ms_values = pd.Series(np.nan, index=raw.index, dtype="float64")

        millis_mask = abs_values >= 1e12
        seconds_mask = (~millis_mask) & (abs_values >= 1e9)

        if millis_mask.any():
            ms_values.loc[millis_mask] = numeric.loc[millis_mask]
        if seconds_mask.any():
            ms_values.loc[seconds_mask] = numeric.loc[seconds_mask] * 1000.0

        parsed_numeric = pd.to_datetime(ms_values, unit="ms", utc=True, errors="coerce")
        timestamps.loc[parsed_numeric.notna()] = parsed_numeric.loc[parsed_numeric.notna()]

    remaining_mask = timestamps.isna() & raw.notna()
    if remaining_mask.any():
        parsed_text = pd.to_datetime(
            raw.loc[remaining_mask].astype(str), utc=True, errors="coerce", format="mixed"
        )
        parsed_ok = parsed_text.dropna()
        timestamps.loc[parsed_ok.index] = parsed_ok

    return timestamps


def normalise_ohlcv_frame(frame: pd.DataFrame, *, timestamp_col: str = "open_time") -> pd.DataFrame:
    """Return a copy of *frame* with UTC timestamps in ascending order."""

    if timestamp_col not in frame.columns:
        raise KeyError(f"timestamp column '{timestamp_col}' is missing")

    if frame.empty:
        return frame.copy()

    result = frame.copy(deep=True)
    timestamps = _parse_timestamps(result[timestamp_col])

    valid_mask = timestamps.notna()
    if not valid_mask.all():
        result = result.loc[valid_mask].copy()
        timestamps = timestamps.loc[valid_mask]

    result[timestamp_col] = timestamps
    if result.empty:
        return result.reset_index(drop=True)

    result.sort_values(timestamp_col, inplace=True, kind="mergesort")
    result.drop_duplicates(subset=timestamp_col, keep="last", inplace=True)
    result.reset_index(drop=True, inplace=True)
    return result


def frame_to_candles(frame: pd.DataFrame) -> List[Candle]:
    """Convert a normalised frame into candles, skipping rows with missing prices."""

    missing = [column for column in CANDLE_COLUMNS if column not in frame.columns]
    if missing:
        raise KeyError(f"candle columns missing: {', '.join(missing)}")

    candles: List[Candle] = []
    for row in frame.loc[:, list(CANDLE_COLUMNS)].itertuples(index=False):
        values = [to_decimal(value) for value in row[1:]]
        if any(value is None for value in values):
            continue
        open_, high, low, close, quote_volume = values
        candles.append(
            Candle(
                open_time=row[0].to_pydatetime(),
                open=open_,
                high=high,
                low=low,
                close=close,
                quote_volume=quote_volume,
            )
        )
    return candles


def trailing_range(candles: Sequence[Candle], window: int) -> tuple[Decimal, Decimal]:
    """Return ``(high, low)`` over the last ``window`` candles."""

    if window <= 0 or len(candles) < window:
        raise ValueError(f"need {window} candles, have {len(candles)}")
    tail = candles[-window:]
    return max(candle.high for candle in tail), min(candle.low for candle in tail)


def trailing_average_volume(candles: Sequence[Candle], window: int) -> Decimal:
    """Mean quote volume of the last ``window`` candles, zero-volume days excluded.

    Returns ``Decimal(0)`` when every candle in the window has zero volume.
    """

    volumes: Iterable[Decimal] = (candle.quote_volume for candle in candles[-window:])
    traded = [volume for volume in volumes if volume > 0]
    if not traded:
        return Decimal(0)
    return sum(traded, Decimal(0)) / Decimal(len(traded))
