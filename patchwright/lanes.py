#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Append‑only conversational history per lane.

A lane is one sequential chain of builder work (``job:task:role``). The
builder replays the most recent messages of its lane in front of every new
invocation and appends exactly two messages when an invocation resolves: the
user turn and the final assistant turn. Nothing is ever removed here; the
window only limits what ``prepare`` returns.

Storage is in memory by default. With a directory configured each lane is a
JSONL file (``<dir>/<lane>-<hash>.jsonl``), so history survives restarts.
"""
from __future__ import annotations

import hashlib
import json
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional

from patchwright import get_logger
from patchwright.provider import ProviderMessage

log = get_logger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


def lane_key(job: str, task: str, role: str = "builder") -> str:
    return f"{job}:{task}:{role}"


class LaneHistory:
    """
    Parameters
    ----------
    directory : Path | str | None
        JSONL storage directory; None keeps history in memory.
    window : int
        Maximum messages returned by ``prepare`` (most recent first kept).
    """

    def __init__(self, directory: Optional[Path | str] = None, *, window: int = 12) -> None:
        self.directory = Path(directory).expanduser() if directory else None
        self.window = max(0, int(window))
        self._mem: Dict[str, List[ProviderMessage]] = {}
        self._lock = threading.Lock()

    def _file(self, lane_id: str) -> Path:
        if self.directory is None:
            raise RuntimeError("LaneHistory has no storage directory")
        # Sanitising is lossy ("a:b" vs "a_b"), so the raw id is hashed in.
        digest = hashlib.sha1(lane_id.encode("utf-8")).hexdigest()[:10]
        return self.directory / f"{_UNSAFE_CHARS_RE.sub('_', lane_id)}-{digest}.jsonl"

    def _load(self, lane_id: str) -> List[ProviderMessage]:
        if self.directory is None:
            return list(self._mem.get(lane_id, []))
        path = self._file(lane_id)
        if not path.exists():
            return []
        out: List[ProviderMessage] = []
        for i, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                out.append(ProviderMessage.from_dict(json.loads(line)))
            except json.JSONDecodeError:
                log.warning("Skipping corrupt lane record %s:%d", path, i)
        return out

    def history(self, lane_id: str) -> List[ProviderMessage]:
        """Full history of *lane_id* (oldest first)."""
        with self._lock:
            return self._load(lane_id)

    def prepare(self, lane_id: str) -> List[ProviderMessage]:
        """Recent messages to replay before a new invocation."""
        if self.window == 0:
            return []
        return self.history(lane_id)[-self.window :]

    def append(self, lane_id: str, *messages: ProviderMessage) -> None:
        with self._lock:
            if self.directory is None:
                self._mem.setdefault(lane_id, []).extend(messages)
                return
            self.directory.mkdir(parents=True, exist_ok=True)
            with self._file(lane_id).open("a", encoding="utf-8") as fh:
                for m in messages:
                    fh.write(json.dumps(m.to_dict(), ensure_ascii=False) + "\n")
        log.debug("Lane %s: appended %d message(s)", lane_id, len(messages))


__all__ = ["LaneHistory", "lane_key"]
