"""Time-boxed cache of the symbols the exchange currently lists as tradable."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Protocol

from .errors import NetworkError
from .log import log
from .models import TradableSymbolSet

Clock = Callable[[], datetime]


class TradableSymbolSource(Protocol):
    def get_tradable_symbols(self) -> Awaitable[frozenset]:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TradableSymbolCache:
    """Holds the exchange's tradable-symbol set for ``ttl``.

    A stale set is preferred over no set: when a refresh fails the previous
    set is served and flagged via :attr:`last_refresh_degraded`.
    """

    def __init__(
        self,
        source: TradableSymbolSource,
        *,
        ttl: timedelta = timedelta(hours=24),
        clock: Clock = utc_now,
    ) -> None:
        self._source = source
        self._ttl = ttl
        self._clock = clock
        self._current: Optional[TradableSymbolSet] = None
        self._lock = asyncio.Lock()
        self.last_refresh_degraded = False

    @property
    def current(self) -> Optional[TradableSymbolSet]:
        return self._current

    def invalidate(self) -> None:
        self._current = None

    async def get(self) -> frozenset:
        """Return the tradable set, refreshing it when older than the TTL.

        Raises :class:`NetworkError` only when the exchange is unreachable and
        no set was ever cached.
        """

        async with self._lock:
            now = self._clock()
            cached = self._current
            if cached is not None and cached.is_fresh(now, self._ttl):
                self.last_refresh_degraded = False
                return cached.symbols

            try:
                symbols = frozenset(await self._source.get_tradable_symbols())
            except NetworkError as exc:
                if cached is None:
                    log("tradable.refresh.failed", err=str(exc))
                    raise
                log("tradable.refresh.stale", err=str(exc), size=len(cached.symbols))
                self.last_refresh_degraded = True
                return cached.symbols
            except Exception as exc:
                log("tradable.refresh.error", exc=exc, err=str(exc))
                self.last_refresh_degraded = True
                return cached.symbols if cached is not None else frozenset()

            if not symbols:
                # An empty catalogue is treated as a failed refresh.
                log("tradable.refresh.empty", stale=cached is not None)
                self.last_refresh_degraded = True
                return cached.symbols if cached is not None else frozenset()

            self._current = TradableSymbolSet(symbols=symbols, fetch_time=now)
            self.last_refresh_degraded = False
            log("tradable.refresh", size=len(symbols))
            return symbols
