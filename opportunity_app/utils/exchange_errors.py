"""Helpers for interpreting Binance futures error payloads and HTTP statuses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class ExchangeErrorPolicy:
    """Behavioural hints for a specific exchange error ``code``."""

    retryable: bool = False
    unknown_symbol: bool = False


_DEFAULT_POLICY = ExchangeErrorPolicy()

_CODE_POLICIES: dict[int, ExchangeErrorPolicy] = {
    # Internal error / disconnected; the request may be retried.
    -1000: ExchangeErrorPolicy(retryable=True),
    -1001: ExchangeErrorPolicy(retryable=True),
    # Too many requests, back off and retry.
    -1003: ExchangeErrorPolicy(retryable=True),
    # Timeout waiting for the matching engine.
    -1007: ExchangeErrorPolicy(retryable=True),
    -1008: ExchangeErrorPolicy(retryable=True),
    # Invalid symbol.
    -1121: ExchangeErrorPolicy(unknown_symbol=True),
}

# 418 is an IP ban after repeated 429s; both clear after waiting.
_RETRYABLE_STATUSES = frozenset({408, 418, 429, 500, 502, 503, 504})


def normalise_error_code(value: Any) -> int | None:
    """Return the numeric form of an error ``code`` field."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def extract_error(payload: Any) -> tuple[int | None, str]:
    """Return ``(code, message)`` from an exchange error body.

    Successful list/dict payloads carry no ``code`` and yield ``(None, "")``.
    """

    if not isinstance(payload, Mapping):
        return None, ""
    code = normalise_error_code(payload.get("code"))
    message = ""
    for key in ("msg", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            message = value.strip()
            break
    return code, message


def resolve_error_policy(code: int | None) -> ExchangeErrorPolicy:
    """Return handling hints for an exchange error ``code``."""

    if code is None:
        return _DEFAULT_POLICY
    return _CODE_POLICIES.get(code, _DEFAULT_POLICY)


def is_retryable_status(status: int | None) -> bool:
    return status is not None and status in _RETRYABLE_STATUSES
