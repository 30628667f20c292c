"""Filesystem primitives shared by the cache layers and the event log.

The discovery engine keeps two kinds of on-disk artefacts: day-partitioned
JSON caches (historical range profiles, trailing volume averages) and the
JSON-lines event log. Both must survive an interrupted process without
leaving a torn file behind, so every full rewrite goes through
:func:`atomic_write_text`, which writes a sibling temporary file and swaps it
into place with :func:`os.replace`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
import contextlib
import io
import json
import os
import tempfile

__all__ = ["atomic_write_json", "atomic_write_text", "ensure_directory", "tail_lines"]


def ensure_directory(path: Path | str) -> Path:
    """Ensure that ``path`` exists and return it as a :class:`Path`."""

    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def atomic_write_text(
    path: Path | str,
    text: str,
    *,
    encoding: str = "utf-8",
    fsync: bool = False,
    preserve_permissions: bool = True,
) -> None:
    """Replace ``path`` with ``text`` in a single rename.

    Parameters
    ----------
    path:
        Target file path. Parent directories are created automatically.
    text:
        Full new contents of ``path``.
    encoding:
        Encoding used for writing ``text``.
    fsync:
        Flush the temporary file to disk before the rename.
    preserve_permissions:
        Copy the destination's mode bits onto the replacement file.
    """

    destination = Path(path)
    ensure_directory(destination.parent)

    existing_mode: int | None = None
    if preserve_permissions and destination.exists():
        try:
            existing_mode = destination.stat().st_mode
        except FileNotFoundError:  # pragma: no cover - race with deletion
            existing_mode = None

    tmp_name: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding=encoding,
            delete=False,
            dir=destination.parent,
            prefix=f".{destination.name}.",
            suffix=".tmp",
        ) as handle:
            tmp_name = handle.name
            handle.write(text)
            handle.flush()
            if fsync:
                os.fsync(handle.fileno())

        if existing_mode is not None:
            with contextlib.suppress(FileNotFoundError):
                os.chmod(tmp_name, existing_mode)

        os.replace(tmp_name, destination)
    except Exception:
        if tmp_name:
            with contextlib.suppress(FileNotFoundError):
                os.remove(tmp_name)
        raise


def atomic_write_json(path: Path | str, payload: Any, *, indent: int | None = 2) -> None:
    """Serialise ``payload`` as JSON and write it with :func:`atomic_write_text`."""

    text = json.dumps(payload, ensure_ascii=False, indent=indent, sort_keys=True)
    atomic_write_text(path, text + "\n", encoding="utf-8")


def tail_lines(
    path: Path | str,
    limit: int | None = None,
    *,
    encoding: str = "utf-8",
    errors: str = "strict",
    keep_newlines: bool = False,
    drop_blank: bool = False,
) -> list[str]:
    """Return the last ``limit`` lines from ``path`` without reading it all."""

    target = Path(path)
    if not target.exists():
        return []
    if limit is not None and limit <= 0:
        return []

    if limit is None:
        with target.open("r", encoding=encoding, errors=errors) as handle:
            lines = list(handle)
    else:
        with target.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            position = handle.tell()
            if position == 0:
                return []

            buffer = bytearray()
            wanted = limit + 1
            newline_count = 0
            while position > 0 and newline_count <= wanted:
                read_size = min(8192, position)
                position -= read_size
                handle.seek(position)
                chunk = handle.read(read_size)
                buffer[:0] = chunk
                newline_count += chunk.count(b"\n")

        with contextlib.closing(
            io.TextIOWrapper(io.BytesIO(bytes(buffer)), encoding=encoding, errors=errors)
        ) as wrapper:
            lines = wrapper.read().splitlines(keepends=True)[-limit:]

    result = list(lines)
    if drop_blank:
        result = [line for line in result if line.strip()]
    if not keep_newlines:
        result = [line.rstrip("\r\n") for line in result]
    return result
