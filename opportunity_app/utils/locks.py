"""Advisory interprocess locks guarding cache and settings rewrites."""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

__all__ = ["FileLockTimeout", "InterprocessFileLock", "acquire_lock", "lock_path_for"]


class FileLockTimeout(RuntimeError):
    """Raised when a lock cannot be acquired within the requested timeout."""


def lock_path_for(target: Path | str) -> Path:
    """Return the sidecar lock file used to guard ``target``."""

    path = Path(target)
    return path.with_name(f".{path.name}.lock")


def _lock_fd(fd: int) -> None:
    try:
        import fcntl
    except ImportError:  # pragma: no cover - Windows
        import msvcrt

        try:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
    else:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_fd(fd: int) -> None:
    try:
        import fcntl
    except ImportError:  # pragma: no cover - Windows
        import msvcrt

        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class InterprocessFileLock:
    """Exclusive advisory lock on a sidecar file."""

    def __init__(
        self,
        path: Path,
        *,
        timeout: float = 5.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.path = Path(path)
        self.timeout = max(float(timeout), 0.0)
        self.poll_interval = max(float(poll_interval), 0.01)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while True:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
            try:
                _lock_fd(fd)
            except BlockingIOError:
                os.close(fd)
                if time.monotonic() >= deadline:
                    raise FileLockTimeout(f"Timed out waiting for lock {self.path}")
                time.sleep(self.poll_interval)
                continue
            self._fd = fd
            return

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            _unlock_fd(self._fd)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "InterprocessFileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@contextmanager
def acquire_lock(target: Path, *, timeout: float = 5.0) -> Iterator[InterprocessFileLock]:
    """Hold the sidecar lock of ``target`` for the duration of the block."""

    lock = InterprocessFileLock(lock_path_for(target), timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
