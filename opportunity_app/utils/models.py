"""Value objects exchanged between the caches, detectors and the orchestrator."""

from __future__ import annotations

import enum
import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import CacheError

LOOKBACK_WINDOWS: Tuple[int, ...] = (5, 10, 20)
VOLUME_WINDOWS: Tuple[int, ...] = (5, 7, 10, 20)


def to_decimal(value: object) -> Optional[Decimal]:
    """Best-effort conversion of API/DB/JSON numbers to :class:`Decimal`."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        result = Decimal(text)
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


@dataclass(frozen=True)
class TickerSnapshot:
    """One 24h ticker row as polled from the exchange."""

    symbol: str
    last_price: Decimal
    price_change_percent: Decimal
    volume_base: Decimal
    quote_volume: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class Candle:
    open_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    quote_volume: Decimal


@dataclass(frozen=True)
class TradableSymbolSet:
    symbols: frozenset
    fetch_time: datetime

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.fetch_time < ttl


_PROFILE_PRICE_FIELDS = {
    "high5Day": "high5",
    "low5Day": "low5",
    "high10Day": "high10",
    "low10Day": "low10",
    "high20Day": "high20",
    "low20Day": "low20",
}

_PROFILE_VOLUME_FIELDS = {
    "avgQuoteVolume5Day": "avg_quote_volume5",
    "avgQuoteVolume7Day": "avg_quote_volume7",
    "avgQuoteVolume10Day": "avg_quote_volume10",
    "avgQuoteVolume20Day": "avg_quote_volume20",
}


@dataclass(frozen=True)
class HistoricalProfile:
    """Trailing daily range and quote-volume figures of one storage-form symbol.

    A profile is valid only on the calendar day stamped in ``cache_time``.
    """

    symbol: str
    high5: Decimal
    low5: Decimal
    high10: Decimal
    low10: Decimal
    high20: Decimal
    low20: Decimal
    avg_quote_volume5: Decimal
    avg_quote_volume7: Decimal
    avg_quote_volume10: Decimal
    avg_quote_volume20: Decimal
    cache_time: date

    def __post_init__(self) -> None:
        for window in LOOKBACK_WINDOWS:
            if self.high(window) < self.low(window):
                raise ValueError(
                    f"{self.symbol}: high{window} {self.high(window)} below low{window} {self.low(window)}"
                )

    def high(self, window: int) -> Decimal:
        return getattr(self, f"high{window}")

    def low(self, window: int) -> Decimal:
        return getattr(self, f"low{window}")

    def avg_quote_volume(self, window: int) -> Decimal:
        return getattr(self, f"avg_quote_volume{window}")

    def is_valid_on(self, day: date) -> bool:
        return self.cache_time == day

    def to_cache_payload(self) -> Dict[str, str]:
        payload = {key: format(getattr(self, attr), "f") for key, attr in _PROFILE_PRICE_FIELDS.items()}
        payload.update({key: format(getattr(self, attr), "f") for key, attr in _PROFILE_VOLUME_FIELDS.items()})
        payload["cacheTime"] = self.cache_time.isoformat()
        return payload

    @classmethod
    def from_cache_payload(cls, symbol: str, payload: Mapping[str, Any]) -> "HistoricalProfile":
        """Rebuild a profile from one cache-file entry, raising :class:`CacheError`."""

        if not isinstance(payload, Mapping):
            raise CacheError(f"{symbol}: cache entry is not an object")

        values: Dict[str, Any] = {"symbol": symbol}
        for key, attr in {**_PROFILE_PRICE_FIELDS, **_PROFILE_VOLUME_FIELDS}.items():
            number = to_decimal(payload.get(key))
            if number is None:
                raise CacheError(f"{symbol}: missing or invalid {key}")
            values[attr] = number

        raw_time = payload.get("cacheTime")
        try:
            # Older files stored a full timestamp; only the date part matters.
            values["cache_time"] = date.fromisoformat(str(raw_time)[:10])
        except (TypeError, ValueError):
            raise CacheError(f"{symbol}: invalid cacheTime {raw_time!r}") from None

        try:
            return cls(**values)
        except ValueError as exc:
            raise CacheError(str(exc)) from exc


class BreakoutDirection(str, enum.Enum):
    HIGH = "HIGH"
    LOW = "LOW"


@dataclass(frozen=True)
class BreakoutRecord:
    symbol: str
    current_price: Decimal
    reference_price: Decimal
    direction: BreakoutDirection
    window: int
    break_percent: Decimal


@dataclass(frozen=True)
class VolumeBreakoutRecord:
    symbol: str
    current_price: Decimal
    change_percent: Decimal
    quote_volume_24h: Decimal
    avg_quote_volume: Decimal
    multiplier: Decimal
    rank: int = 0


@dataclass(frozen=True)
class MarketRankingItem:
    rank: int
    symbol: str
    current_price: Decimal
    change_percent: Decimal
    volume_24h: Decimal
    quote_volume_24h: Decimal


@dataclass(frozen=True)
class BreakoutResult:
    """The six breakout lists, each sorted by ``break_percent`` descending."""

    break5_high: Tuple[BreakoutRecord, ...] = ()
    break10_high: Tuple[BreakoutRecord, ...] = ()
    break20_high: Tuple[BreakoutRecord, ...] = ()
    break5_low: Tuple[BreakoutRecord, ...] = ()
    break10_low: Tuple[BreakoutRecord, ...] = ()
    break20_low: Tuple[BreakoutRecord, ...] = ()

    def get(self, direction: BreakoutDirection, window: int) -> Tuple[BreakoutRecord, ...]:
        return getattr(self, f"break{window}_{direction.value.lower()}")

    @property
    def total(self) -> int:
        return sum(
            len(self.get(direction, window))
            for direction in BreakoutDirection
            for window in LOOKBACK_WINDOWS
        )

    def counts(self) -> Dict[str, int]:
        return {
            f"break{window}_{direction.value.lower()}": len(self.get(direction, window))
            for direction in BreakoutDirection
            for window in LOOKBACK_WINDOWS
        }


class PassState(str, enum.Enum):
    IDLE = "Idle"
    FETCHING_TICKERS = "FetchingTickers"
    REFRESHING_CACHES = "RefreshingCaches"
    DETECTING = "Detecting"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class PassStatus(str, enum.Enum):
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


@dataclass(frozen=True)
class DiscoveryResult:
    """Consistent snapshot handed to the presentation layer after one pass.

    Cancelled and failed passes carry no records at all; a completed pass with
    empty lists is the legitimate "nothing broke out today" outcome.
    """

    status: PassStatus
    started_at: datetime
    finished_at: datetime
    breakouts: BreakoutResult = field(default_factory=BreakoutResult)
    volume_breakouts: Tuple[VolumeBreakoutRecord, ...] = ()
    top_gainers: Tuple[MarketRankingItem, ...] = ()
    top_losers: Tuple[MarketRankingItem, ...] = ()
    error: Optional[str] = None
    notes: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is PassStatus.COMPLETED

    def as_dict(self) -> Dict[str, Any]:
        """JSON-friendly rendering (decimals and dates become strings)."""

        return _jsonable(asdict(self))


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value
