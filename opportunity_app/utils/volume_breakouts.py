"""Volume breakout detection over a ticker snapshot.

A symbol qualifies when its 24h quote volume is more than the threshold
multiple of its trailing average; matches are ranked by that multiple.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal
from typing import Awaitable, List, Optional, Protocol, Sequence

from .cancellation import CancellationToken, ensure_token
from .errors import DiscoveryCancelled
from .log import log
from .models import TickerSnapshot, VolumeBreakoutRecord
from .symbols import to_storage_form

_HUNDRED = Decimal(100)


class AverageVolumeSource(Protocol):
    def get_average_volume(
        self, symbol: str, days: int, token: CancellationToken | None = None
    ) -> Awaitable[Decimal]:
        ...


async def _evaluate(
    ticker: TickerSnapshot,
    provider: AverageVolumeSource,
    days: int,
    threshold: Decimal,
    token: CancellationToken,
) -> Optional[VolumeBreakoutRecord]:
    try:
        average = await provider.get_average_volume(ticker.symbol, days, token)
    except DiscoveryCancelled:
        raise
    except Exception as exc:
        log("volume.detect.symbol_error", symbol=ticker.symbol, err=str(exc))
        return None

    if average is None or average <= 0:
        return None
    if ticker.quote_volume <= average * threshold:
        return None
    return VolumeBreakoutRecord(
        symbol=to_storage_form(ticker.symbol),
        current_price=ticker.last_price,
        change_percent=ticker.price_change_percent / _HUNDRED,
        quote_volume_24h=ticker.quote_volume,
        avg_quote_volume=average,
        multiplier=ticker.quote_volume / average,
    )


async def detect_volume_breakouts(
    tickers: Sequence[TickerSnapshot],
    provider: AverageVolumeSource,
    *,
    days: int = 7,
    multiplier_threshold: float | Decimal = 2.0,
    top_k: int = 50,
    batch_size: int = 10,
    batch_delay: float = 0.1,
    token: CancellationToken | None = None,
) -> List[VolumeBreakoutRecord]:
    """Rank ``tickers`` whose 24h quote volume exceeds ``threshold`` times their average.

    Tickers are evaluated in concurrent batches of ``batch_size``. Raises
    :class:`~.errors.DiscoveryCancelled` if ``token`` fires; no partial list is
    returned in that case.
    """

    token = ensure_token(token)
    threshold = Decimal(str(multiplier_threshold))
    size = max(1, batch_size)

    records: List[VolumeBreakoutRecord] = []
    batches = [tickers[index : index + size] for index in range(0, len(tickers), size)]
    for number, batch in enumerate(batches):
        token.raise_if_cancelled()
        if number and batch_delay > 0:
            await asyncio.sleep(batch_delay)
        tasks = [
            asyncio.ensure_future(_evaluate(ticker, provider, days, threshold, token)) for ticker in batch
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        token.raise_if_cancelled()
        records.extend(record for record in results if record is not None)

    records.sort(key=lambda record: (record.multiplier, record.symbol), reverse=True)
    ranked = [replace(record, rank=position) for position, record in enumerate(records[: max(0, top_k)], start=1)]
    log("volume.detect.done", candidates=len(tickers), matched=len(records), ranked=len(ranked), days=days)
    return ranked
