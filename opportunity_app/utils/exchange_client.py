"""Async client for the Binance USDⓈ-M futures public REST endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from .errors import NetworkError
from .exchange_errors import extract_error, is_retryable_status, resolve_error_policy
from .log import log
from .models import TickerSnapshot, to_decimal
from .symbols import clean_symbol, to_exchange_form

DEFAULT_BASE_URL = "https://fapi.binance.com"

TICKER_24H_PATH = "/fapi/v1/ticker/24hr"
EXCHANGE_INFO_PATH = "/fapi/v1/exchangeInfo"

_TRADING_STATUS = "TRADING"


class _RetryableRequestError(NetworkError):
    """Internal marker for failures worth another attempt."""

    def __init__(self, message: str, *, meta: Mapping[str, Any], code: int | None = None, status: int | None = None):
        super().__init__(message, code=code, status=status)
        self.meta = dict(meta)


class UnknownSymbolError(NetworkError):
    """The exchange rejected a request because the symbol does not exist."""


def _default_wait() -> wait_base:
    return wait_exponential(multiplier=0.5, max=5.0) + wait_random(0.0, 0.5)


def _parse_timestamp(value: Any) -> datetime:
    millis = to_decimal(value)
    if millis is not None and millis > 0:
        return datetime.fromtimestamp(float(millis) / 1000.0, tz=timezone.utc)
    return datetime.now(timezone.utc)


def parse_ticker(row: Mapping[str, Any]) -> Optional[TickerSnapshot]:
    """Return a :class:`TickerSnapshot` for one ``ticker/24hr`` row or ``None``."""

    if not isinstance(row, Mapping):
        return None
    symbol = clean_symbol(row.get("symbol"))
    if not symbol:
        return None

    last_price = to_decimal(row.get("lastPrice"))
    change = to_decimal(row.get("priceChangePercent"))
    volume = to_decimal(row.get("volume"))
    quote_volume = to_decimal(row.get("quoteVolume"))
    if last_price is None or change is None or volume is None or quote_volume is None:
        return None

    return TickerSnapshot(
        symbol=symbol,
        last_price=last_price,
        price_change_percent=change,
        volume_base=volume,
        quote_volume=quote_volume,
        timestamp=_parse_timestamp(row.get("closeTime")),
    )


class ExchangeClient:
    """Ticker and instrument catalogue access with bounded retries.

    Transport failures, rate limiting and server errors are retried with
    exponential backoff; once the attempts are exhausted the last failure is
    raised as :class:`~.errors.NetworkError`.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = 10.0,
        max_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self._client = client
        self._owns_client = client is None
        self._retry_wait = retry_wait if retry_wait is not None else _default_wait()

    async def __aenter__(self) -> "ExchangeClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"Accept": "application/json"},
            )
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request_once(self, path: str, params: Mapping[str, Any] | None) -> Any:
        try:
            response = await self._http().get(self._url(path), params=dict(params or {}))
        except httpx.TransportError as exc:
            meta = {"err": str(exc), "kind": type(exc).__name__}
            log("exchange.network_error", path=path, **meta)
            raise _RetryableRequestError(f"request to {path} failed: {exc}", meta=meta) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        code, message = extract_error(payload)
        if response.is_success and code is None:
            return payload

        status = response.status_code
        detail = message or response.text.strip()[:200] or response.reason_phrase
        meta = {"status": status, "code": code, "message": detail}
        log("exchange.http_error", path=path, **meta)

        policy = resolve_error_policy(code)
        text = f"exchange error {code if code is not None else status} on {path}: {detail}"
        if policy.unknown_symbol:
            raise UnknownSymbolError(text, code=code, status=status)
        if policy.retryable or is_retryable_status(status):
            raise _RetryableRequestError(text, meta=meta, code=code, status=status)
        raise NetworkError(text, code=code, status=status)

    async def _get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        def _log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            if outcome is None or not outcome.failed:
                return
            exc = outcome.exception()
            if isinstance(exc, _RetryableRequestError):
                log(
                    "exchange.request.retry",
                    path=path,
                    attempt=retry_state.attempt_number,
                    maxAttempts=self.max_attempts,
                    **exc.meta,
                )

        retrying = AsyncRetrying(
            reraise=True,
            wait=self._retry_wait,
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(_RetryableRequestError),
            after=_log_retry,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._request_once(path, params)
        except _RetryableRequestError as exc:
            raise NetworkError(str(exc), code=exc.code, status=exc.status) from exc
        except RetryError as exc:  # pragma: no cover - reraise=True surfaces the last error
            raise NetworkError(str(exc)) from exc
        raise NetworkError(f"no response from {path}")  # pragma: no cover

    async def get_all_tickers(self) -> List[TickerSnapshot]:
        """Return the 24h ticker of every listed futures contract."""

        payload = await self._get(TICKER_24H_PATH)
        if not isinstance(payload, list):
            raise NetworkError(f"unexpected ticker payload type {type(payload).__name__}")

        tickers: List[TickerSnapshot] = []
        skipped = 0
        for row in payload:
            ticker = parse_ticker(row)
            if ticker is None:
                skipped += 1
                continue
            tickers.append(ticker)
        if skipped:
            log("exchange.tickers.skipped_rows", skipped=skipped, total=len(payload))
        return tickers

    async def get_tradable_symbols(self) -> frozenset:
        """Return the exchange-form symbols currently open for trading."""

        payload = await self._get(EXCHANGE_INFO_PATH)
        rows = payload.get("symbols") if isinstance(payload, Mapping) else None
        if not isinstance(rows, list):
            raise NetworkError("exchangeInfo payload has no symbols list")

        symbols = set()
        for row in rows:
            if not isinstance(row, Mapping):
                continue
            if str(row.get("status", "")).upper() != _TRADING_STATUS:
                continue
            symbol = clean_symbol(row.get("symbol"))
            if symbol:
                symbols.add(symbol)
        return frozenset(symbols)

    async def get_ticker(self, symbol: str) -> Optional[TickerSnapshot]:
        """Return the 24h ticker for ``symbol`` (either form) or ``None`` if unknown."""

        exchange_symbol = to_exchange_form(symbol)
        if not exchange_symbol:
            return None
        try:
            payload = await self._get(TICKER_24H_PATH, {"symbol": exchange_symbol})
        except UnknownSymbolError:
            log("exchange.ticker.unknown_symbol", symbol=exchange_symbol)
            return None
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        return parse_ticker(payload) if isinstance(payload, Mapping) else None
