#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Structured phase events for builder runs.

``RunLogger.event(name, **data)`` forwards every event to the project logger
(INFO, with ``event``/``event_data`` extras the JSON formatter picks up) and,
when a path is configured, appends it as one JSON line to a run log. The sink
is write‑only: a failing write is logged and never reaches the builder.
"""
from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from patchwright import get_logger

log = get_logger(__name__)

PATCH_APPLIED = "patch_applied"
PATCH_ROLLBACK = "patch_rollback"
PATCH_RETRY = "patch_retry"
PATCH_PARSE_FAILED = "patch_parse_failed"
CONTEXT_REQUEST = "context_request"
MODE_SWITCH = "builder_mode_switch"
INTERPRETER_REQUEST = "interpreter_request"
INTERPRETER_RESPONSE = "interpreter_response"
INTERPRETER_RETRY = "interpreter_retry"


class RunLogger:
    """Write‑only sink for builder phase events."""

    def __init__(self, path: Optional[Path | str] = None, *, lane_id: Optional[str] = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self.lane_id = lane_id
        self.events: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def event(self, name: str, **data: Any) -> None:
        record = {"ts": time.time(), "event": name, "lane": self.lane_id, "data": data}
        with self._lock:
            self.events.append(record)
        log.info("%s %s", name, json.dumps(data, ensure_ascii=False, default=str), extra={"event": name, "event_data": data})
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(record, ensure_ascii=False, default=str)
            with self._lock, self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError as exc:
            log.warning("Run log write failed (%s): %s", self.path, exc)

    def names(self) -> List[str]:
        return [e["event"] for e in self.events]


__all__ = [
    "RunLogger",
    "PATCH_APPLIED",
    "PATCH_ROLLBACK",
    "PATCH_RETRY",
    "PATCH_PARSE_FAILED",
    "CONTEXT_REQUEST",
    "MODE_SWITCH",
    "INTERPRETER_REQUEST",
    "INTERPRETER_RESPONSE",
    "INTERPRETER_RETRY",
]
