"""Daily range and volume profiles with a memory → file → database hierarchy.

Profiles are stamped with the calendar day they were computed on and are
only served on that day. Today's profiles live in memory on the owning
instance and in ``<PROFILE_CACHE_DIR>/YYYYMMDDNDAYRANGE.json``; a rebuild
from the kline database happens only when neither tier has a usable entry.
"""

from __future__ import annotations

import asyncio
import json
from datetime import date, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .cancellation import CancellationToken, ensure_token
from .errors import CacheError, InsufficientHistory
from .file_io import atomic_write_json, ensure_directory
from .locks import acquire_lock
from .log import log
from .models import LOOKBACK_WINDOWS, VOLUME_WINDOWS, Candle, HistoricalProfile
from .ohlcv import trailing_average_volume, trailing_range
from .paths import PROFILE_CACHE_DIR
from .symbols import SymbolMatcher, to_storage_form

__all__ = [
    "HistoricalProfileCache",
    "build_profile",
    "profile_file_name",
]

FILE_SUFFIX = "NDAYRANGE.json"

DailyClock = Callable[[], date]
ProfileMap = Dict[str, HistoricalProfile]


class CandleSource(Protocol):
    def get_all_symbols(self) -> List[str]:
        ...

    def get_daily_candles(self, symbol: str, start_date: date, end_date: date) -> List[Candle]:
        ...


def profile_file_name(day: date) -> str:
    return f"{day:%Y%m%d}{FILE_SUFFIX}"


def _file_day(path: Path) -> Optional[date]:
    stem = path.name[: -len(FILE_SUFFIX)] if path.name.endswith(FILE_SUFFIX) else ""
    if len(stem) != 8 or not stem.isdigit():
        return None
    try:
        return date(int(stem[:4]), int(stem[4:6]), int(stem[6:]))
    except ValueError:
        return None


def build_profile(
    symbol: str,
    candles: Sequence[Candle],
    day: date,
    *,
    min_candles: int = 20,
) -> HistoricalProfile:
    """Compute a profile from daily ``candles`` in any order.

    Raises :class:`InsufficientHistory` with fewer than ``min_candles``
    candles or when none of the last five days traded.
    """

    ordered = sorted(candles, key=lambda candle: candle.open_time)
    if len(ordered) < min_candles:
        raise InsufficientHistory(symbol, len(ordered), min_candles)

    shortest = min(VOLUME_WINDOWS)
    if trailing_average_volume(ordered, shortest) <= 0:
        raise InsufficientHistory(symbol, 0, 1)

    values: Dict[str, object] = {"symbol": symbol, "cache_time": day}
    for window in LOOKBACK_WINDOWS:
        high, low = trailing_range(ordered, window)
        values[f"high{window}"] = high
        values[f"low{window}"] = low
    for window in VOLUME_WINDOWS:
        values[f"avg_quote_volume{window}"] = trailing_average_volume(ordered, window)
    return HistoricalProfile(**values)  # type: ignore[arg-type]


class HistoricalProfileCache:
    def __init__(
        self,
        source: CandleSource,
        *,
        cache_dir: Path = PROFILE_CACHE_DIR,
        today: DailyClock = date.today,
        lookback_days: int = 25,
        min_candles: int = 20,
        retention_days: int = 7,
        batch_size: int = 10,
    ) -> None:
        self._source = source
        self._cache_dir = Path(cache_dir)
        self._today = today
        self.lookback_days = lookback_days
        self.min_candles = min_candles
        self.retention_days = retention_days
        self.batch_size = max(1, batch_size)
        self._memory: ProfileMap = {}
        self._memory_day: Optional[date] = None
        self._lock = asyncio.Lock()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def file_path(self, day: date) -> Path:
        return self._cache_dir / profile_file_name(day)

    def memory_snapshot(self) -> ProfileMap:
        if self._memory_day != self._today():
            return {}
        return dict(self._memory)

    # -- file tier -----------------------------------------------------

    def read_file(self, day: date) -> Optional[ProfileMap]:
        """Return the valid entries of ``day``'s file, or ``None`` if unusable."""

        path = self.file_path(day)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            log("profiles.file.unreadable", path=str(path), err=str(exc))
            return None

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            log("profiles.file.invalid_json", path=str(path), err=str(exc))
            return None
        if not isinstance(payload, Mapping):
            log("profiles.file.invalid_shape", path=str(path))
            return None

        profiles: ProfileMap = {}
        rejected = 0
        for key, entry in payload.items():
            symbol = to_storage_form(key)
            try:
                profile = HistoricalProfile.from_cache_payload(symbol, entry)
            except CacheError:
                rejected += 1
                continue
            if not profile.is_valid_on(day):
                rejected += 1
                continue
            profiles[symbol] = profile
        if rejected:
            log("profiles.file.rejected_entries", path=str(path), rejected=rejected, kept=len(profiles))
        return profiles

    async def preload_today(self) -> Optional[ProfileMap]:
        """Read today's file off the event loop; used alongside the tradable refresh."""

        if self.memory_snapshot():
            return None
        return await asyncio.to_thread(self.read_file, self._today())

    def write_file(self, day: date, profiles: Mapping[str, HistoricalProfile]) -> Path:
        path = self.file_path(day)
        ensure_directory(path.parent)
        payload = {symbol: profile.to_cache_payload() for symbol, profile in sorted(profiles.items())}
        with acquire_lock(path):
            atomic_write_json(path, payload)
        log("profiles.file.written", path=str(path), count=len(payload))
        return path

    def cleanup_expired(self, day: Optional[date] = None) -> List[Path]:
        """Delete profile files older than the retention window."""

        today = day or self._today()
        cutoff = today - timedelta(days=self.retention_days)
        removed: List[Path] = []
        if not self._cache_dir.exists():
            return removed
        for path in self._cache_dir.glob(f"*{FILE_SUFFIX}"):
            file_day = _file_day(path)
            if file_day is None or file_day >= cutoff:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                log("profiles.cleanup.failed", path=str(path), err=str(exc))
                continue
            removed.append(path)
        if removed:
            log("profiles.cleanup", removed=len(removed))
        return removed

    # -- database tier -------------------------------------------------

    def _build_one(self, symbol: str, day: date) -> Optional[HistoricalProfile]:
        start = day - timedelta(days=self.lookback_days)
        end = day - timedelta(days=1)
        try:
            candles = self._source.get_daily_candles(symbol, start, end)
            return build_profile(to_storage_form(symbol), candles, day, min_candles=self.min_candles)
        except InsufficientHistory as exc:
            log("profiles.rebuild.insufficient_history", symbol=symbol, available=exc.available)
            return None
        except Exception as exc:
            log("profiles.rebuild.symbol_error", symbol=symbol, exc=exc, err=str(exc))
            return None

    async def rebuild(
        self,
        tradable: Iterable[str],
        token: CancellationToken | None = None,
    ) -> ProfileMap:
        """Recompute today's profiles for database symbols that are tradable.

        The result is persisted only once complete and non-empty; a cancelled
        rebuild raises :class:`~.errors.DiscoveryCancelled` and writes nothing.
        """

        token = ensure_token(token)
        day = self._today()
        await asyncio.to_thread(self.cleanup_expired, day)

        matcher = tradable if isinstance(tradable, SymbolMatcher) else SymbolMatcher(tradable)
        stored = await asyncio.to_thread(self._source.get_all_symbols)

        candidates: Dict[str, str] = {}
        for symbol in stored:
            key = to_storage_form(symbol)
            if key and key not in candidates and matcher.matches(symbol):
                candidates[key] = symbol
        log("profiles.rebuild.start", candidates=len(candidates), stored=len(stored))

        names = list(candidates.values())
        profiles: ProfileMap = {}
        for index in range(0, len(names), self.batch_size):
            token.raise_if_cancelled()
            batch = names[index : index + self.batch_size]
            results = await asyncio.gather(
                *(asyncio.to_thread(self._build_one, symbol, day) for symbol in batch)
            )
            for profile in results:
                if profile is not None:
                    profiles[profile.symbol] = profile
        token.raise_if_cancelled()

        log("profiles.rebuild.done", built=len(profiles), candidates=len(candidates))
        if profiles:
            await asyncio.to_thread(self.write_file, day, profiles)
        return profiles

    # -- public entry point --------------------------------------------

    async def get_profiles(
        self,
        tradable: Iterable[str],
        token: CancellationToken | None = None,
        *,
        preloaded: Optional[ProfileMap] = None,
    ) -> ProfileMap:
        """Return today's profiles restricted to ``tradable`` symbols."""

        matcher = SymbolMatcher(tradable)
        async with self._lock:
            day = self._today()

            if self._memory_day == day and self._memory:
                return _restrict(self._memory, matcher)

            entries = preloaded if preloaded is not None else await asyncio.to_thread(self.read_file, day)
            # The preload may have been read before midnight.
            entries = {symbol: profile for symbol, profile in (entries or {}).items() if profile.is_valid_on(day)}
            if entries:
                usable = _restrict(entries, matcher)
                if usable:
                    log("profiles.file.hit", count=len(usable))
                    self._memory = dict(entries)
                    self._memory_day = day
                    return usable

            profiles = await self.rebuild(matcher, token)
            self._memory = profiles
            self._memory_day = day
            return _restrict(profiles, matcher)


def _restrict(profiles: Mapping[str, HistoricalProfile], matcher: SymbolMatcher) -> ProfileMap:
    return {symbol: profile for symbol, profile in profiles.items() if matcher.matches(symbol)}
