"""Cooperative cancellation shared by every phase and batch loop of a pass."""

from __future__ import annotations

import threading
from typing import Optional

from .errors import DiscoveryCancelled


class CancellationToken:
    """Thread-safe one-shot cancellation flag.

    The host may call :meth:`cancel` from any thread (for example a UI thread)
    while the pass runs on an event loop elsewhere; the engine polls the token
    between phases and between batches.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DiscoveryCancelled(self._reason or "discovery pass cancelled")


class _NeverCancelled(CancellationToken):
    def cancel(self, reason: str | None = None) -> None:  # pragma: no cover - guard
        raise RuntimeError("the shared no-op token cannot be cancelled")


NEVER_CANCELLED = _NeverCancelled()


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    return token if token is not None else NEVER_CANCELLED
