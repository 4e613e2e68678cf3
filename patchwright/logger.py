#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Logging Facility
===============================================================================

Purpose
-------
One idempotent logging setup shared by every module of the builder pipeline.
Modules obtain their logger with:

    from patchwright import get_logger
    log = get_logger(__name__)

Behaviour
---------
* Handlers live on the project root logger ``patchwright`` only; children
  propagate, so a module never prints the same record twice.
* Console handler at INFO (tunable); daily rotating file at DEBUG.
* When the log directory is not writable we fall back to the temp dir and,
  failing that, to console only. Logging must never break a builder run.

Environment
-----------
    PATCHWRIGHT_LOG_DIR   – log directory (default: ./logs)
    PATCHWRIGHT_LOG_LVL   – console level name or number (default: INFO)
    PATCHWRIGHT_LOG_ROT   – TimedRotatingFileHandler ``when`` (default: midnight)
    PATCHWRIGHT_LOG_BACK  – rotated files to keep (default: 7)
    PATCHWRIGHT_LOG_UTC   – truthy → UTC timestamps and rotation
    PATCHWRIGHT_LOG_JSON  – truthy → JSON lines on the console
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "patchwright"

_TRUTHY = {"1", "true", "yes", "on", "y", "t"}
_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}


def is_truthy(val: str | None) -> bool:
    """Return True if *val* spells an enabled flag."""
    return val is not None and val.strip().lower() in _TRUTHY


def parse_level(val: str | None, default: int = logging.INFO) -> int:
    """Parse ``"DEBUG"`` or ``"10"`` style level values; unknown → *default*."""
    s = (val or "").strip()
    if not s:
        return default
    if s.isdigit():
        return int(s)
    return _LEVELS.get(s.upper(), default)


# ════════════════════════════════════════════════════════════════════════════
# Environment
# ════════════════════════════════════════════════════════════════════════════
LOG_DIR = os.getenv("PATCHWRIGHT_LOG_DIR", "logs")
CONSOLE_LEVEL_NAME = (os.getenv("PATCHWRIGHT_LOG_LVL") or "INFO").strip().upper()
CONSOLE_LEVEL = parse_level(CONSOLE_LEVEL_NAME)
ROTATE_WHEN = os.getenv("PATCHWRIGHT_LOG_ROT", "midnight")
BACKUP_COUNT = int(os.getenv("PATCHWRIGHT_LOG_BACK", "7"))
USE_UTC = is_truthy(os.getenv("PATCHWRIGHT_LOG_UTC"))
JSON_CONSOLE = is_truthy(os.getenv("PATCHWRIGHT_LOG_JSON"))

FORMAT = "%(asctime)s | %(name)s | %(process)d | %(levelname)-8s | %(message)s"
DTFMT = "%Y-%m-%d %H:%M:%S"


# ════════════════════════════════════════════════════════════════════════════
# Formatters
# ════════════════════════════════════════════════════════════════════════════
class JsonFormatter(logging.Formatter):
    """One JSON object per record (CI friendly)."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        if USE_UTC:
            ts = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created))
        else:
            ts = time.strftime("%Y-%m-%dT%H:%M:%S%z", time.localtime(record.created))
        data = {
            "ts": ts,
            "name": record.name,
            "pid": record.process,
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            data["event"] = event
            data["data"] = getattr(record, "event_data", None)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


def _human_formatter() -> logging.Formatter:
    fmt = logging.Formatter(fmt=FORMAT, datefmt=DTFMT)
    if USE_UTC:
        fmt.converter = time.gmtime  # type: ignore[assignment]
    return fmt


# ════════════════════════════════════════════════════════════════════════════
# Handlers
# ════════════════════════════════════════════════════════════════════════════
def _writable_dir(preferred: Path) -> Optional[Path]:
    """
    Return a writable log directory: *preferred*, else ``$TMPDIR/patchwright-logs``,
    else None (console only).
    """
    for cand in (preferred, Path(tempfile.gettempdir()) / "patchwright-logs"):
        try:
            cand = cand.expanduser().resolve()
            cand.mkdir(parents=True, exist_ok=True)
            marker = cand / ".writable"
            marker.write_text("ok", encoding="utf-8")
            marker.unlink(missing_ok=True)
            return cand
        except OSError:
            continue
    return None


def _file_handler(log_dir: Path) -> Optional[logging.Handler]:
    try:
        fh = TimedRotatingFileHandler(
            filename=log_dir / "patchwright.log",
            when=ROTATE_WHEN,
            interval=1,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
            utc=USE_UTC,
        )
    except (OSError, ValueError):
        return None
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(_human_formatter())
    return fh


def _console_handler() -> logging.Handler:
    ch = logging.StreamHandler()
    ch.setLevel(CONSOLE_LEVEL)
    ch.setFormatter(JsonFormatter() if JSON_CONSOLE else _human_formatter())
    return ch


# ════════════════════════════════════════════════════════════════════════════
# Public helper
# ════════════════════════════════════════════════════════════════════════════
def get_logger(name: str | None = None) -> logging.Logger:
    """
    Return a configured logger.

    Parameters
    ----------
    name : str | None
        Module name (``__name__``) or None for the project root logger.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)

    if not root.handlers:
        root.setLevel(logging.DEBUG)
        log_dir = _writable_dir(Path(LOG_DIR))
        fh = _file_handler(log_dir) if log_dir is not None else None
        if fh is not None:
            root.addHandler(fh)
        root.addHandler(_console_handler())
        root.propagate = False
        root.debug(
            "Logger initialised | dir=%s | console=%s | rotate=%s | backups=%s | json-console=%s",
            log_dir or "<console-only>",
            CONSOLE_LEVEL_NAME,
            ROTATE_WHEN,
            BACKUP_COUNT,
            JSON_CONSOLE,
        )

    if name is None or name == ROOT_LOGGER_NAME:
        return root

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    return logger


__all__ = ["get_logger", "JsonFormatter", "ROOT_LOGGER_NAME", "is_truthy", "parse_level"]
