#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Write authorization for one builder invocation.

Allowed set = plan ``target_files`` ∪ ``create_files`` minus read‑only paths.
When that is empty the context bundle's ``allow_write_paths`` is used; when
that is empty too, any path outside the read‑only list may be written.

An entry matches itself and everything beneath it (``src`` covers
``src/a.py``). Read‑only entries always win. Unsafe paths (absolute, ``..``,
``.git``) and unresolved template paths are rejected regardless of lists.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from patch_validator import is_placeholder_path, is_safe_repo_rel_posix, normalize_rel_path
from patchwright import get_logger
from patchwright.errors import DisallowedPathError
from patchwright.models import ContextBundle, PatchAction, Plan, normalize_paths

log = get_logger(__name__)


def _covers(entry: str, path: str) -> bool:
    return path == entry or path.startswith(entry + "/")


@dataclass(frozen=True)
class WritePolicy:
    allowed: Tuple[str, ...]
    read_only: Tuple[str, ...]

    @classmethod
    def for_run(cls, plan: Plan, bundle: ContextBundle) -> "WritePolicy":
        read_only = normalize_paths(bundle.read_only_paths)
        planned = normalize_paths([*plan.target_files, *plan.create_files])
        allowed = tuple(p for p in planned if not any(_covers(r, p) for r in read_only))
        if not allowed:
            allowed = tuple(
                p for p in normalize_paths(bundle.allow_write_paths) if not any(_covers(r, p) for r in read_only)
            )
        log.debug("Write policy | allowed=%s | read_only=%s", allowed or "<any>", read_only)
        return cls(allowed=allowed, read_only=read_only)

    def is_read_only(self, path: str) -> bool:
        norm = normalize_rel_path(path)
        return any(_covers(r, norm) for r in self.read_only)

    def permits(self, path: str) -> bool:
        norm = normalize_rel_path(path)
        if not is_safe_repo_rel_posix(norm) or is_placeholder_path(norm):
            return False
        if self.is_read_only(norm):
            return False
        if not self.allowed:
            return True
        return any(_covers(a, norm) for a in self.allowed)

    def disallowed(self, paths: Iterable[str]) -> List[str]:
        return [p for p in dict.fromkeys(paths) if not self.permits(p)]

    def check(self, actions: Sequence[PatchAction]) -> None:
        """Raise ``DisallowedPathError`` if any action targets a forbidden path."""
        bad = self.disallowed(a.file for a in actions)
        if bad:
            raise DisallowedPathError(bad, allowed=self.allowed, read_only=self.read_only)


__all__ = ["WritePolicy"]
