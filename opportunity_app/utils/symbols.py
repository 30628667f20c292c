"""Symbol normalisation between the exchange and the kline database.

The exchange lists futures as ``BTCUSDT`` while the kline database may store
either ``BTC`` or ``BTCUSDT``; the two catalogues are maintained separately
and do not agree on suffixing. Everything here is a total function: empty or
unparseable input comes back cleaned but otherwise unchanged.
"""

from __future__ import annotations

from typing import Iterable, Tuple

QUOTE_ASSET = "USDT"

# Suffixes that already denote a complete pair; ``to_exchange_form`` leaves
# symbols ending in one of these alone.
_KNOWN_SUFFIXES: Tuple[str, ...] = (
    "USDT",
    "USDC",
    "FDUSD",
    "TUSD",
    "BUSD",
    "DAI",
    "BTC",
    "ETH",
    "BNB",
)

_SEPARATORS = (" ", "-", "_", "/", ":")


def clean_symbol(symbol: object) -> str:
    """Upper-case ``symbol`` and drop whitespace and pair separators."""

    if symbol is None:
        return ""
    text = str(symbol).strip().upper()
    for separator in _SEPARATORS:
        if separator in text:
            text = text.replace(separator, "")
    return text


def _has_pair_suffix(text: str) -> bool:
    for suffix in _KNOWN_SUFFIXES:
        if text.endswith(suffix) and len(text) > len(suffix):
            return True
    return False


def to_exchange_form(symbol: object) -> str:
    """Return the exchange ticker for ``symbol`` (``"btc"`` -> ``"BTCUSDT"``)."""

    text = clean_symbol(symbol)
    if not text or _has_pair_suffix(text):
        return text
    return f"{text}{QUOTE_ASSET}"


def to_storage_form(symbol: object) -> str:
    """Return ``symbol`` without its trailing ``USDT`` (``"BTCUSDT"`` -> ``"BTC"``)."""

    text = clean_symbol(symbol)
    if text.endswith(QUOTE_ASSET) and len(text) > len(QUOTE_ASSET):
        return text[: -len(QUOTE_ASSET)]
    return text


def matches(storage_symbol: object, exchange_symbols: Iterable[str]) -> bool:
    """Three-way tolerant membership test of a database symbol in an exchange set.

    Succeeds when the symbol equals a member, equals a member once ``USDT`` is
    appended, or equals a member once the member's ``USDT`` is stripped.
    """

    return SymbolMatcher(exchange_symbols).matches(storage_symbol)


class SymbolMatcher:
    """Precomputed form of :func:`matches` for bulk lookups against one set."""

    def __init__(self, exchange_symbols: Iterable[str]) -> None:
        members = {clean_symbol(member) for member in exchange_symbols}
        members.discard("")
        self._members = frozenset(members)
        self._stripped = frozenset(to_storage_form(member) for member in members)

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, symbol: object) -> bool:
        return self.matches(symbol)

    def matches(self, storage_symbol: object) -> bool:
        text = clean_symbol(storage_symbol)
        if not text:
            return False
        return (
            text in self._members
            or f"{text}{QUOTE_ASSET}" in self._members
            or text in self._stripped
        )

    def is_tradable_ticker(self, exchange_symbol: object) -> bool:
        """Return ``True`` for a ``USDT`` ticker that is a member of the set."""

        text = clean_symbol(exchange_symbol)
        return text.endswith(QUOTE_ASSET) and text in self._members
