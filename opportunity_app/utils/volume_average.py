"""Trailing average quote volume per symbol with a one-file-per-day cache.

Lookups are memoised per ``(days, date)``. Batch workers only touch the
in-memory map; :meth:`AverageVolumeProvider.flush` writes
``avg_volume_{days}days_{YYYYMMDD}.json`` once the orchestrating pass is done.
"""

from __future__ import annotations

import asyncio
import json
import re
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from .cancellation import CancellationToken, ensure_token
from .file_io import atomic_write_json, ensure_directory
from .locks import acquire_lock
from .log import log
from .models import to_decimal
from .paths import VOLUME_CACHE_DIR
from .symbols import to_storage_form

_FILE_PATTERN = re.compile(r"^avg_volume_(?P<days>\d+)days_(?P<day>\d{8})\.json$")

MemoKey = Tuple[int, date]


class VolumeSource(Protocol):
    def get_average_quote_volume(self, symbol: str, days: int, today: date) -> Decimal:
        ...


def volume_file_name(days: int, day: date) -> str:
    return f"avg_volume_{days}days_{day:%Y%m%d}.json"


class AverageVolumeProvider:
    def __init__(
        self,
        source: VolumeSource,
        *,
        cache_dir: Path = VOLUME_CACHE_DIR,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._source = source
        self._cache_dir = Path(cache_dir)
        self._today = today
        self._memo: Dict[MemoKey, Dict[str, Decimal]] = {}
        self._dirty: set[MemoKey] = set()
        self._loaded: set[MemoKey] = set()

    def file_path(self, days: int, day: date) -> Path:
        return self._cache_dir / volume_file_name(days, day)

    def _load_file(self, key: MemoKey) -> Dict[str, Decimal]:
        days, day = key
        path = self.file_path(days, day)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            log("volume.cache.invalid", path=str(path), err=str(exc))
            return {}
        if not isinstance(payload, Mapping):
            log("volume.cache.invalid_shape", path=str(path))
            return {}

        values: Dict[str, Decimal] = {}
        for symbol, raw in payload.items():
            number = to_decimal(raw)
            if number is not None:
                values[to_storage_form(symbol)] = number
        return values

    async def _bucket(self, key: MemoKey) -> Dict[str, Decimal]:
        if key not in self._loaded:
            stored = await asyncio.to_thread(self._load_file, key)
            if key not in self._loaded:
                bucket = self._memo.setdefault(key, {})
                for symbol, value in stored.items():
                    bucket.setdefault(symbol, value)
                self._loaded.add(key)
        return self._memo.setdefault(key, {})

    async def preload(self, days: int) -> None:
        """Read today's cache file for ``days`` off the event loop."""

        await self._bucket((days, self._today()))

    async def get_average_volume(
        self,
        symbol: str,
        days: int,
        token: CancellationToken | None = None,
    ) -> Decimal:
        """Average quote volume of ``symbol`` over ``days`` days; ``0`` means no usable history."""

        ensure_token(token).raise_if_cancelled()
        day = self._today()
        key = (days, day)
        storage = to_storage_form(symbol)
        bucket = await self._bucket(key)
        cached = bucket.get(storage)
        if cached is not None:
            return cached

        try:
            value = await asyncio.to_thread(self._source.get_average_quote_volume, symbol, days, day)
        except Exception as exc:
            log("volume.average.error", symbol=symbol, days=days, err=str(exc))
            return Decimal(0)

        if value > 0:
            bucket[storage] = value
            self._dirty.add(key)
        return value

    def flush(self) -> List[Path]:
        """Persist every bucket that gained entries since the last flush."""

        written: List[Path] = []
        for key in sorted(self._dirty):
            days, day = key
            path = self.file_path(days, day)
            ensure_directory(path.parent)
            payload = {symbol: format(value, "f") for symbol, value in sorted(self._memo.get(key, {}).items())}
            with acquire_lock(path):
                atomic_write_json(path, payload)
            written.append(path)
        if written:
            log("volume.cache.flush", files=len(written))
        self._dirty.clear()
        self._forget_past_days()
        return written

    def _forget_past_days(self) -> None:
        today = self._today()
        for key in [key for key in self._memo if key[1] != today]:
            self._memo.pop(key, None)
            self._loaded.discard(key)

    def cleanup_expired(self, day: Optional[date] = None) -> List[Path]:
        """Delete cache files dated before ``day`` (default: today)."""

        today = day or self._today()
        removed: List[Path] = []
        if not self._cache_dir.exists():
            return removed
        for path in self._cache_dir.glob("avg_volume_*days_*.json"):
            match = _FILE_PATTERN.match(path.name)
            if match is None:
                continue
            stamp = match.group("day")
            try:
                file_day = date(int(stamp[:4]), int(stamp[4:6]), int(stamp[6:]))
            except ValueError:
                continue
            if file_day >= today:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed.append(path)
        if removed:
            log("volume.cache.cleanup", removed=len(removed))
        return removed
