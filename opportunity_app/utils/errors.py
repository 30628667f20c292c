"""Exception taxonomy of the opportunity discovery engine.

``NetworkError`` and ``DataError`` are fatal only at whole-pass granularity
(initial ticker fetch, tradable-set fetch without any cached set); at
per-symbol granularity they are logged and the symbol is skipped.
``CacheError`` always degrades to a rebuild. ``InsufficientHistory`` and
``NoMatch`` never reach the caller: they only shrink the candidate set.
"""

from __future__ import annotations


class DiscoveryError(RuntimeError):
    """Base class for every error raised by the engine."""


class NetworkError(DiscoveryError):
    """The exchange was unreachable, timed out or kept rejecting requests."""

    def __init__(self, message: str, *, code: int | None = None, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.status = status


class DataError(DiscoveryError):
    """The database was unreachable or returned malformed rows."""


class CacheError(DiscoveryError):
    """A cache file could not be read or parsed."""


class InsufficientHistory(DiscoveryError):
    """A symbol has fewer usable daily candles than a profile requires."""

    def __init__(self, symbol: str, available: int, required: int):
        super().__init__(f"{symbol}: {available} usable candles, {required} required")
        self.symbol = symbol
        self.available = available
        self.required = required


class NoMatch(DiscoveryError):
    """A symbol exists in one catalogue but not the other."""


class PassInProgressError(DiscoveryError):
    """A discovery pass was requested while another one is still running."""


class DiscoveryCancelled(DiscoveryError):
    """The caller's cancellation token fired while a pass was running."""
