"""One discovery pass: live tickers, cache refresh, then detection.

``OpportunityDiscovery`` owns the tradable-symbol cache, the historical
profile cache and the average-volume provider for its lifetime, so repeated
passes in the same process reuse today's data. Only one pass may be in flight
per instance.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Sequence, Tuple

from .breakouts import detect_breakouts
from .cancellation import CancellationToken, ensure_token
from .database import KlineDatabase
from .envs import Settings, get_settings
from .errors import DiscoveryCancelled, NetworkError, PassInProgressError
from .exchange_client import ExchangeClient
from .historical_profiles import HistoricalProfileCache, ProfileMap
from .log import log
from .models import (
    BreakoutResult,
    DiscoveryResult,
    MarketRankingItem,
    PassState,
    PassStatus,
    TickerSnapshot,
    VolumeBreakoutRecord,
)
from .rankings import rank_movers
from .symbols import SymbolMatcher, to_storage_form
from .tradable_cache import Clock, TradableSymbolCache, utc_now
from .volume_average import AverageVolumeProvider
from .volume_breakouts import AverageVolumeSource, detect_volume_breakouts


class TickerSource(Protocol):
    def get_all_tickers(self) -> Awaitable[List[TickerSnapshot]]:
        ...


def live_prices(tickers: Sequence[TickerSnapshot], matcher: SymbolMatcher) -> Dict[str, Decimal]:
    """Map storage-form symbol to last price for tradable ``USDT`` tickers."""

    prices: Dict[str, Decimal] = {}
    for ticker in tickers:
        if ticker.last_price > 0 and matcher.is_tradable_ticker(ticker.symbol):
            prices[to_storage_form(ticker.symbol)] = ticker.last_price
    return prices


def _reraise_cancellation(outcome: Any) -> None:
    if isinstance(outcome, (asyncio.CancelledError, DiscoveryCancelled)):
        raise outcome


class OpportunityDiscovery:
    def __init__(
        self,
        exchange: TickerSource,
        tradable_cache: TradableSymbolCache,
        profile_cache: HistoricalProfileCache,
        volume_provider: AverageVolumeSource,
        *,
        volume_days: int = 7,
        volume_multiplier: float = 2.0,
        volume_top_k: int = 50,
        volume_batch_size: int = 10,
        volume_batch_delay: float = 0.1,
        ranking_top_n: int = 10,
        clock: Clock = utc_now,
        resources: Sequence[Any] = (),
    ) -> None:
        self.exchange = exchange
        self.tradable_cache = tradable_cache
        self.profile_cache = profile_cache
        self.volume_provider = volume_provider
        self.volume_days = volume_days
        self.volume_multiplier = volume_multiplier
        self.volume_top_k = volume_top_k
        self.volume_batch_size = volume_batch_size
        self.volume_batch_delay = volume_batch_delay
        self.ranking_top_n = ranking_top_n
        self._clock = clock
        self._resources = tuple(resources)
        self._state = PassState.IDLE
        self._running = False
        self.last_result: Optional[DiscoveryResult] = None

    @property
    def state(self) -> PassState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    def _transition(self, state: PassState, **payload: Any) -> None:
        previous = self._state
        self._state = state
        log("discovery.state", state=state.value, previous=previous.value, **payload)

    def _finish(
        self,
        status: PassStatus,
        started_at: datetime,
        *,
        error: Optional[str] = None,
        notes: Sequence[str] = (),
        breakouts: Optional[BreakoutResult] = None,
        volume_breakouts: Sequence[VolumeBreakoutRecord] = (),
        gainers: Sequence[MarketRankingItem] = (),
        losers: Sequence[MarketRankingItem] = (),
    ) -> DiscoveryResult:
        terminal = {
            PassStatus.COMPLETED: PassState.COMPLETED,
            PassStatus.CANCELLED: PassState.CANCELLED,
            PassStatus.FAILED: PassState.FAILED,
        }[status]
        result = DiscoveryResult(
            status=status,
            started_at=started_at,
            finished_at=self._clock(),
            breakouts=breakouts if breakouts is not None else BreakoutResult(),
            volume_breakouts=tuple(volume_breakouts),
            top_gainers=tuple(gainers),
            top_losers=tuple(losers),
            error=error,
            notes=tuple(notes),
        )
        self._transition(terminal, error=error, notes=list(notes))
        self.last_result = result
        return result

    async def run_pass(self, token: CancellationToken | None = None) -> DiscoveryResult:
        """Run one pass and return its result.

        Raises :class:`PassInProgressError` if a pass is already running on
        this instance. Cancellation through ``token`` yields a ``Cancelled``
        result carrying no records; cancellation of the awaiting task itself
        propagates.
        """

        if self._running:
            raise PassInProgressError("a discovery pass is already in progress")
        self._running = True
        token = ensure_token(token)
        started_at = self._clock()
        try:
            return await self._run(token, started_at)
        except DiscoveryCancelled as exc:
            return self._finish(PassStatus.CANCELLED, started_at, error=str(exc))
        except asyncio.CancelledError:
            self._transition(PassState.CANCELLED, error="task cancelled")
            raise
        except Exception as exc:
            log("discovery.pass.failed", exc=exc, err=str(exc))
            return self._finish(PassStatus.FAILED, started_at, error=f"{type(exc).__name__}: {exc}")
        finally:
            self._running = False
            self._state = PassState.IDLE

    async def _run(self, token: CancellationToken, started_at: datetime) -> DiscoveryResult:
        notes: List[str] = []

        token.raise_if_cancelled()
        self._transition(PassState.FETCHING_TICKERS)
        try:
            tickers = list(await self.exchange.get_all_tickers())
        except NetworkError as exc:
            log("discovery.tickers.failed", err=str(exc))
            return self._finish(PassStatus.FAILED, started_at, error=f"ticker fetch failed: {exc}")
        log("discovery.tickers", count=len(tickers))

        token.raise_if_cancelled()
        self._transition(PassState.REFRESHING_CACHES)
        tradable_outcome, preload_outcome, volume_outcome = await asyncio.gather(
            self.tradable_cache.get(),
            self.profile_cache.preload_today(),
            self._preload_volume_cache(),
            return_exceptions=True,
        )
        _reraise_cancellation(tradable_outcome)
        _reraise_cancellation(preload_outcome)
        if isinstance(volume_outcome, Exception):
            log("discovery.volume_cache.preload_failed", err=str(volume_outcome))
        if isinstance(tradable_outcome, BaseException):
            log("discovery.tradable.failed", err=str(tradable_outcome))
            return self._finish(
                PassStatus.FAILED,
                started_at,
                error=f"tradable symbols unavailable: {tradable_outcome}",
            )
        tradable: frozenset = tradable_outcome
        if self.tradable_cache.last_refresh_degraded:
            notes.append("tradable symbol set could not be refreshed; using cached set")

        preloaded: Optional[ProfileMap] = None
        if isinstance(preload_outcome, BaseException):
            log("discovery.profiles.preload_failed", err=str(preload_outcome))
        else:
            preloaded = preload_outcome

        token.raise_if_cancelled()
        matcher = SymbolMatcher(tradable)
        try:
            profiles = await self.profile_cache.get_profiles(tradable, token, preloaded=preloaded)
        except DiscoveryCancelled:
            raise
        except Exception as exc:
            log("discovery.profiles.degraded", exc=exc, err=str(exc))
            notes.append(f"historical profiles unavailable: {exc}")
            profiles = {}

        token.raise_if_cancelled()
        self._transition(PassState.DETECTING, profiles=len(profiles), tradable=len(tradable))
        prices = live_prices(tickers, matcher)
        candidates = [ticker for ticker in tickers if matcher.is_tradable_ticker(ticker.symbol)]

        async def _breakouts() -> BreakoutResult:
            return detect_breakouts(profiles, prices)

        async def _rankings() -> Tuple[List[MarketRankingItem], List[MarketRankingItem]]:
            return rank_movers(tickers, matcher, top_n=self.ranking_top_n)

        breakout_outcome, volume_outcome, ranking_outcome = await asyncio.gather(
            _breakouts(),
            detect_volume_breakouts(
                candidates,
                self.volume_provider,
                days=self.volume_days,
                multiplier_threshold=self.volume_multiplier,
                top_k=self.volume_top_k,
                batch_size=self.volume_batch_size,
                batch_delay=self.volume_batch_delay,
                token=token,
            ),
            _rankings(),
            return_exceptions=True,
        )
        for outcome in (breakout_outcome, volume_outcome, ranking_outcome):
            _reraise_cancellation(outcome)
        token.raise_if_cancelled()

        breakouts = BreakoutResult()
        if isinstance(breakout_outcome, BaseException):
            log("discovery.breakouts.failed", exc=breakout_outcome, err=str(breakout_outcome))
            notes.append(f"breakout detection failed: {breakout_outcome}")
        else:
            breakouts = breakout_outcome

        volume_breakouts: Sequence[VolumeBreakoutRecord] = ()
        if isinstance(volume_outcome, BaseException):
            log("discovery.volume.failed", exc=volume_outcome, err=str(volume_outcome))
            notes.append(f"volume breakout detection failed: {volume_outcome}")
        else:
            volume_breakouts = volume_outcome

        gainers: Sequence[MarketRankingItem] = ()
        losers: Sequence[MarketRankingItem] = ()
        if isinstance(ranking_outcome, BaseException):
            log("discovery.rankings.failed", exc=ranking_outcome, err=str(ranking_outcome))
            notes.append(f"market rankings failed: {ranking_outcome}")
        else:
            gainers, losers = ranking_outcome

        await self._persist_volume_cache(notes)

        log(
            "discovery.pass.completed",
            breakouts=breakouts.counts(),
            volume=len(volume_breakouts),
            gainers=len(gainers),
            losers=len(losers),
        )
        return self._finish(
            PassStatus.COMPLETED,
            started_at,
            notes=notes,
            breakouts=breakouts,
            volume_breakouts=volume_breakouts,
            gainers=gainers,
            losers=losers,
        )

    async def _preload_volume_cache(self) -> None:
        preload = getattr(self.volume_provider, "preload", None)
        if callable(preload):
            await preload(self.volume_days)

    async def _persist_volume_cache(self, notes: List[str]) -> None:
        flush = getattr(self.volume_provider, "flush", None)
        cleanup = getattr(self.volume_provider, "cleanup_expired", None)
        try:
            if callable(flush):
                await asyncio.to_thread(flush)
            if callable(cleanup):
                await asyncio.to_thread(cleanup)
        except OSError as exc:
            log("discovery.volume_cache.write_failed", err=str(exc))
            notes.append(f"average volume cache not saved: {exc}")

    async def aclose(self) -> None:
        for resource in self._resources:
            closer = getattr(resource, "aclose", None)
            if callable(closer):
                await closer()
                continue
            disposer = getattr(resource, "dispose", None)
            if callable(disposer):
                disposer()


def create_discovery(settings: Settings | None = None) -> OpportunityDiscovery:
    """Wire the Binance client, the kline database and the caches from ``settings``."""

    settings = settings or get_settings()
    exchange = ExchangeClient(
        settings.exchange_base_url,
        timeout=settings.http_timeout_sec,
        max_attempts=settings.http_max_attempts,
    )
    database = KlineDatabase.from_url(
        settings.database_url,
        table=settings.kline_table,
        pool_size=settings.database_pool_size,
    )
    log("discovery.configured", settings=settings.describe())
    return OpportunityDiscovery(
        exchange,
        TradableSymbolCache(exchange, ttl=timedelta(hours=settings.tradable_ttl_hours)),
        HistoricalProfileCache(
            database,
            lookback_days=settings.profile_lookback_days,
            min_candles=settings.profile_min_candles,
            retention_days=settings.profile_retention_days,
            batch_size=settings.profile_batch_size,
        ),
        AverageVolumeProvider(database),
        volume_days=settings.volume_days,
        volume_multiplier=settings.volume_multiplier,
        volume_top_k=settings.volume_top_k,
        volume_batch_size=settings.volume_batch_size,
        volume_batch_delay=settings.volume_batch_delay_sec,
        ranking_top_n=settings.ranking_top_n,
        resources=(exchange, database),
    )
