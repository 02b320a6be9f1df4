"""Structured logging for toolhost.

Entries are flat JSON objects (``timestamp``, ``level``, ``message`` plus
whatever keyword fields the caller passes, such as ``plugin_id`` or
``service_id``). They go to an in-memory ring buffer and are appended to
``<data>/toolhost.log``, which is rotated once it grows past
MAX_LOG_BYTES.
"""

import json
import os
from collections import deque
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any

from toolhost import __version__

BUFFER_SIZE = 1000
MAX_LOG_BYTES = 5 * 1024 * 1024

LEVEL_ORDER = {"error": 0, "warn": 1, "info": 2, "debug": 3}

_log_buffer: deque[dict[str, Any]] = deque(maxlen=BUFFER_SIZE)
_buffer_lock = Lock()
_file_lock = Lock()


def _get_log_file() -> Path:
    from toolhost.config import get_data_paths

    return get_data_paths().log_file


def _entry_key(entry: dict[str, Any]) -> tuple:
    return entry.get("timestamp", ""), entry.get("level", ""), entry.get("message", "")


def _append(entry: dict[str, Any]) -> None:
    """Write one entry to the log file, rotating it first if it is full."""
    log_file = _get_log_file()
    line = json.dumps(entry, default=str) + "\n"
    with _file_lock:
        try:
            if log_file.stat().st_size + len(line) > MAX_LOG_BYTES:
                os.replace(log_file, log_file.with_name(log_file.name + ".1"))
        except FileNotFoundError:
            pass
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)


def _read_tail(log_file: Path, limit: int) -> list[dict[str, Any]]:
    """Last ``limit`` parseable entries of the log file."""
    tail: deque[dict[str, Any]] = deque(maxlen=limit)
    with open(log_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                tail.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return list(tail)


def setup_logging() -> None:
    """Mark the start of a host session."""
    log("info", "toolhost started", version=__version__, pid=os.getpid())


def log(level: str, message: str, **extra: Any) -> None:
    """Log a message.

    Args:
        level: Log level (debug, info, warn, error)
        message: Log message
        **extra: Structured fields, e.g. plugin_id, service_id, duration_ms
    """
    entry = {
        "timestamp": datetime.now().isoformat(),
        "level": level.lower(),
        "message": message,
        **extra,
    }

    with _buffer_lock:
        _log_buffer.append(entry)

    try:
        _append(entry)
    except Exception:
        pass  # Logging must never break a plugin call


def get_logs(
    level: str = "all",
    limit: int = 200,
    since: str | None = None,
    **fields: Any,
) -> list[dict[str, Any]]:
    """Get log entries, newest first.

    Args:
        level: Minimum severity ("all", "error", "warn", "info", "debug")
        limit: Maximum number of entries to return
        since: Only return entries after this ISO timestamp
        **fields: Only return entries whose fields match, e.g. plugin_id="..."
    """
    with _buffer_lock:
        entries = list(_log_buffer)

    # A fresh process has an empty buffer; fall back to the file
    if len(entries) < limit:
        seen = {_entry_key(e) for e in entries}
        try:
            log_file = _get_log_file()
            if log_file.exists():
                for entry in _read_tail(log_file, max(limit, BUFFER_SIZE)):
                    if _entry_key(entry) not in seen:
                        entries.append(entry)
        except OSError:
            pass

    entries.sort(key=lambda e: e.get("timestamp", ""), reverse=True)

    if level != "all":
        threshold = LEVEL_ORDER.get(level, 2)
        entries = [e for e in entries if LEVEL_ORDER.get(e.get("level", "info"), 2) <= threshold]
    if since:
        entries = [e for e in entries if e.get("timestamp", "") > since]
    if fields:
        entries = [e for e in entries if all(e.get(k) == v for k, v in fields.items())]

    return entries[:limit]


def clear_buffer() -> None:
    """Drop buffered entries (the log file is left alone)."""
    with _buffer_lock:
        _log_buffer.clear()
