"""Route exceptions nobody caught into the event log.

Discovery passes run on an event loop driven by the CLI, while the profile
rebuild and the average-volume lookups run in worker threads. An exception
escaping any of those would otherwise only reach stderr, so the package
installs ``sys`` and ``threading`` hooks on import and the CLI attaches a
loop handler once its loop is running.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from types import TracebackType
from typing import Any, Callable, Dict, Optional

from .log import log

_MAX_CONTEXT_VALUE = 300

_hooks: Dict[str, Any] = {"sys": None, "thread": None}


def install_global_exception_handlers(*, force: bool = False) -> None:
    """Log uncaught exceptions from the main thread and worker threads.

    Idempotent unless ``force`` is set; the hooks they replace are still
    called afterwards.
    """

    installed = sys.excepthook is _on_sys_exception and threading.excepthook is _on_thread_exception
    if installed and not force:
        return
    if sys.excepthook is not _on_sys_exception:
        _hooks["sys"] = sys.excepthook
    if threading.excepthook is not _on_thread_exception:
        _hooks["thread"] = threading.excepthook
    sys.excepthook = _on_sys_exception
    threading.excepthook = _on_thread_exception


def attach_loop_handler(loop: asyncio.AbstractEventLoop) -> None:
    """Log exceptions of ``loop``'s orphaned tasks and callbacks, then delegate."""

    previous = loop.get_exception_handler()
    if getattr(previous, "_opportunity_handler", False):
        return

    def _handler(current: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        try:
            _log_loop_context(context)
        finally:
            if previous is not None:
                previous(current, context)
            else:
                current.default_exception_handler(context)

    _handler._opportunity_handler = True  # type: ignore[attr-defined]
    loop.set_exception_handler(_handler)


def _report(
    origin: str,
    exc_type: Optional[type[BaseException]],
    exc_value: Optional[BaseException],
    exc_traceback: Optional[TracebackType],
    **extra: Any,
) -> None:
    if exc_type is None or exc_value is None:
        return
    if issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
        return
    log(
        "runtime.unhandled_exception",
        severity="error",
        exc=(exc_type, exc_value, exc_traceback),
        origin=origin,
        **extra,
    )


def _on_sys_exception(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_traceback: Optional[TracebackType],
) -> None:
    try:
        _report("sys", exc_type, exc_value, exc_traceback, thread=threading.current_thread().name)
    finally:
        previous: Optional[Callable[..., None]] = _hooks["sys"]
        if previous is not None:
            previous(exc_type, exc_value, exc_traceback)


def _on_thread_exception(args: threading.ExceptHookArgs) -> None:
    try:
        _report(
            "thread",
            args.exc_type,
            args.exc_value,
            args.exc_traceback,
            thread=getattr(args.thread, "name", None),
        )
    finally:
        previous: Optional[Callable[..., None]] = _hooks["thread"]
        if previous is not None:
            previous(args)


def _log_loop_context(context: Dict[str, Any]) -> None:
    exc = context.get("exception")
    details = {
        key: str(value)[:_MAX_CONTEXT_VALUE]
        for key, value in context.items()
        if key not in {"exception", "message"} and value is not None
    }
    message = context.get("message")
    if isinstance(exc, BaseException):
        _report("asyncio", type(exc), exc, exc.__traceback__, message=message, loop_context=details)
        return
    log("runtime.asyncio_error", severity="error", origin="asyncio", message=message, loop_context=details)
