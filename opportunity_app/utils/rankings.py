"""Top gainers and losers of the 24h ticker snapshot."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, List, Tuple

from .models import MarketRankingItem, TickerSnapshot
from .symbols import SymbolMatcher, to_storage_form

_HUNDRED = Decimal(100)


def _to_item(rank: int, ticker: TickerSnapshot) -> MarketRankingItem:
    return MarketRankingItem(
        rank=rank,
        symbol=to_storage_form(ticker.symbol),
        current_price=ticker.last_price,
        change_percent=ticker.price_change_percent / _HUNDRED,
        volume_24h=ticker.volume_base,
        quote_volume_24h=ticker.quote_volume,
    )


def rank_movers(
    tickers: Iterable[TickerSnapshot],
    tradable: Iterable[str] | SymbolMatcher,
    *,
    top_n: int = 10,
) -> Tuple[List[MarketRankingItem], List[MarketRankingItem]]:
    """Return ``(gainers, losers)`` among tradable ``USDT`` tickers that moved.

    Gainers are ordered by change descending, losers ascending (largest drop
    first); both are truncated to ``top_n`` and ranked from 1.
    """

    matcher = tradable if isinstance(tradable, SymbolMatcher) else SymbolMatcher(tradable)
    movers = [
        ticker
        for ticker in tickers
        if ticker.price_change_percent != 0 and matcher.is_tradable_ticker(ticker.symbol)
    ]

    gainers = sorted(
        (ticker for ticker in movers if ticker.price_change_percent > 0),
        key=lambda ticker: (-ticker.price_change_percent, ticker.symbol),
    )
    losers = sorted(
        (ticker for ticker in movers if ticker.price_change_percent < 0),
        key=lambda ticker: (ticker.price_change_percent, ticker.symbol),
    )
    limit = max(0, top_n)
    return (
        [_to_item(rank, ticker) for rank, ticker in enumerate(gainers[:limit], start=1)],
        [_to_item(rank, ticker) for rank, ticker in enumerate(losers[:limit], start=1)],
    )
