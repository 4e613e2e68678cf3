#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Patch Applier (snapshot + restore)
===============================================================================

Usage
-----
Apply one validated payload to a workspace:

    python apply_patch.py '<json-string>'  /path/to/workspace
    echo "$json" | python apply_patch.py - /path/to/workspace --format file_writes

Actions
-------
| action  | Required fields                 | Notes                                    |
|---------|---------------------------------|------------------------------------------|
| create  | file, content                   | Creates parents; overwrites existing     |
| replace | file, search_block, replace_block | File must exist; match must be unique  |
| delete  | file                            | File must exist and be a regular file    |

Guarantees
----------
* **No escapes**: absolute paths, '..' and symlink tricks that leave the
  workspace root are rejected; nothing under ``.git/`` is touched.
* **Snapshot + restore, not a transaction**: ``create_rollback`` records the
  bytes/existence of every targeted path first. When an action fails part way,
  ``rollback`` rewrites or removes those paths (and the parent directories a
  create made). A failed restore is reported as ``RollbackError`` which
  carries the original error too.
* **Atomic writes**: each file is written to a same‑dir temp file and moved
  into place with ``os.replace``.
* **Missing files are errors**: replace/delete on a missing path raise.

Logging
-------
INFO for actions and rollbacks; DEBUG for byte counts.
"""
from __future__ import annotations

import argparse
import json
import os
import re
import sys
import tempfile
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from patch_validator import is_safe_repo_rel_posix, normalize_rel_path
from patchwright import get_logger
from patchwright.errors import (
    AmbiguousSearchBlockError,
    PatchApplyError,
    PathOutsideWorkspaceError,
    RollbackError,
    SearchBlockNotFoundError,
)
from patchwright.models import (
    ApplyResult,
    CreateAction,
    DeleteAction,
    PatchAction,
    PatchFormat,
    ReplaceAction,
    RollbackEntry,
    RollbackOutcome,
    RollbackPlan,
)

log = get_logger("patchwright.apply_patch")

# validate_file(rel_path, new_text) raises to veto a write.
FileValidator = Callable[[str, str], None]


# ─────────────────────────────────────────────────────────────────────────────
# Filesystem helpers
# ─────────────────────────────────────────────────────────────────────────────
def _atomic_write_bytes(dest: Path, data: bytes) -> None:
    """
    Write *data* atomically into *dest* (same‑dir temp + replace). Ensures
    parent directories exist and fsyncs before replace.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(dir=str(dest.parent), delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)
    try:
        os.replace(tmp_path, dest)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def _whitespace_pattern(search: str) -> re.Pattern[str]:
    """Regex matching *search* with any run of whitespace collapsed to ``\\s+``."""
    tokens = [re.escape(t) for t in search.strip().split()]
    return re.compile(r"\s+".join(tokens))


def replace_once(text: str, search: str, replacement: str, *, file: str = "") -> str:
    """
    Replace exactly one occurrence of *search* in *text*.

    An exact match must be unique. Without an exact match, a whitespace
    tolerant match is tried (also required to be unique).

    Raises
    ------
    AmbiguousSearchBlockError, SearchBlockNotFoundError
    """
    count = text.count(search)
    if count == 1:
        return text.replace(search, replacement, 1)
    if count > 1:
        raise AmbiguousSearchBlockError(
            f"Ambiguous search block in {file or 'file'} ({count} matches). Provide more context.",
            file=file,
        )

    if search.strip():
        pattern = _whitespace_pattern(search)
        matches = list(pattern.finditer(text))
        if len(matches) == 1:
            m = matches[0]
            log.debug("Whitespace‑tolerant match used for %s", file)
            return text[: m.start()] + replacement + text[m.end() :]
        if len(matches) > 1:
            raise AmbiguousSearchBlockError(
                f"Ambiguous search block in {file or 'file'} ({len(matches)} fuzzy matches). Provide more context.",
                file=file,
            )
    raise SearchBlockNotFoundError(f"Search block not found in {file or 'file'}.", file=file)


# ─────────────────────────────────────────────────────────────────────────────
# Applier
# ─────────────────────────────────────────────────────────────────────────────
class PatchApplier:
    """
    Apply patch actions under *workspace_root* with snapshot‑and‑restore.

    Parameters
    ----------
    workspace_root : Path | str
        Every action path is resolved relative to this directory.
    validate_file : callable | None
        Optional ``(rel_path, new_text) -> None`` hook; raising vetoes the write
        (and triggers rollback when used through ``apply_with_rollback``).
    """

    def __init__(self, workspace_root: Path | str, validate_file: Optional[FileValidator] = None) -> None:
        self.root = Path(workspace_root).expanduser().resolve()
        self.validate_file = validate_file

    # --- paths ---------------------------------------------------------------
    def resolve(self, rel: str) -> Path:
        """Resolve *rel* inside the workspace or raise ``PathOutsideWorkspaceError``."""
        norm = normalize_rel_path(rel)
        if not is_safe_repo_rel_posix(norm):
            raise PathOutsideWorkspaceError(f"Unsafe or absolute patch path: {rel!r}", file=rel)
        target = (self.root / norm).resolve()
        try:
            target.relative_to(self.root)
        except ValueError as exc:
            raise PathOutsideWorkspaceError(f"Path is outside workspace root: {rel!r}", file=rel) from exc
        return target

    def exists(self, rel: str) -> bool:
        """True when *rel* names an existing file inside the workspace."""
        try:
            return self.resolve(rel).is_file()
        except PathOutsideWorkspaceError:
            return False

    def _missing_parents(self, resolved: Path) -> Tuple[Path, ...]:
        missing: List[Path] = []
        parent = resolved.parent
        while parent != self.root and not parent.exists():
            missing.append(parent)
            parent = parent.parent
        return tuple(missing)

    # --- snapshot --------------------------------------------------------------
    def create_rollback(self, actions: Iterable[PatchAction]) -> RollbackPlan:
        """Capture bytes/existence of every targeted path before mutation."""
        entries: Dict[str, RollbackEntry] = {}
        for action in actions:
            rel = normalize_rel_path(action.file)
            if rel in entries:
                continue
            resolved = self.resolve(rel)
            if resolved.is_file():
                entries[rel] = RollbackEntry(rel, resolved, True, resolved.read_bytes())
            else:
                entries[rel] = RollbackEntry(rel, resolved, False, None, self._missing_parents(resolved))
        plan = RollbackPlan(tuple(entries.values()))
        log.debug("Rollback snapshot captured for %d path(s)", len(plan.entries))
        return plan

    def rollback(self, plan: RollbackPlan, *, original: Optional[BaseException] = None) -> RollbackOutcome:
        """
        Restore every snapshot entry (in reverse order).

        Raises
        ------
        RollbackError
            If any entry could not be restored; all entries are still tried.
        """
        failures: List[str] = []
        for entry in reversed(plan.entries):
            try:
                if entry.existed:
                    _atomic_write_bytes(entry.resolved, entry.content or b"")
                elif entry.resolved.exists():
                    entry.resolved.unlink()
                for d in entry.created_dirs:
                    if d.is_dir() and not any(d.iterdir()):
                        d.rmdir()
            except OSError as exc:
                log.error("Rollback of %s failed: %s", entry.file, exc)
                failures.append(f"{entry.file}: {exc}")
        if failures:
            raise RollbackError(original or PatchApplyError("unknown apply failure"), failures)
        log.info("Rolled back %d path(s)", len(plan.entries))
        return RollbackOutcome(attempted=True, ok=True)

    # --- apply -----------------------------------------------------------------
    def _check_write(self, rel: str, text: str) -> None:
        if self.validate_file is None:
            return
        try:
            self.validate_file(rel, text)
        except PatchApplyError:
            raise
        except Exception as exc:
            raise PatchApplyError(f"Validation rejected {rel}: {exc}", file=rel) from exc

    def _apply_one(self, action: PatchAction) -> str:
        rel = normalize_rel_path(action.file)
        dest = self.resolve(rel)

        if isinstance(action, CreateAction):
            if dest.is_dir():
                raise PatchApplyError(f"Cannot create {rel}: path is a directory", file=rel)
            self._check_write(rel, action.content)
            _atomic_write_bytes(dest, action.content.encode("utf-8"))
            log.debug("Wrote %s (%d chars)", rel, len(action.content))
        elif isinstance(action, ReplaceAction):
            if not dest.is_file():
                raise PatchApplyError(f"Cannot replace in missing file {rel}", file=rel)
            current = dest.read_bytes().decode("utf-8")  # keep line endings as-is
            updated = replace_once(current, action.search_block, action.replace_block, file=rel)
            self._check_write(rel, updated)
            _atomic_write_bytes(dest, updated.encode("utf-8"))
            log.debug("Replaced block in %s", rel)
        elif isinstance(action, DeleteAction):
            if not dest.exists():
                raise PatchApplyError(f"Cannot delete missing file {rel}", file=rel)
            if not dest.is_file():
                raise PatchApplyError(f"Refusing to delete non-file path {rel}", file=rel)
            dest.unlink()
            log.debug("Deleted %s", rel)
        else:
            raise TypeError(f"Unknown patch action: {type(action).__name__}")
        return rel

    def apply(self, actions: Sequence[PatchAction]) -> ApplyResult:
        """
        Perform *actions* in order. Does **not** roll back on failure; callers
        that want all‑or‑nothing use ``apply_with_rollback``.
        """
        touched: List[str] = []
        for action in actions:
            try:
                rel = self._apply_one(action)
            except PatchApplyError:
                raise
            except (OSError, UnicodeDecodeError) as exc:
                raise PatchApplyError(f"Failed to {action.action} {action.file}: {exc}", file=action.file) from exc
            if rel not in touched:
                touched.append(rel)
        log.info("Applied %d action(s) touching %s", len(actions), touched)
        return ApplyResult(touched=tuple(touched))

    def apply_with_rollback(self, actions: Sequence[PatchAction]) -> ApplyResult:
        """
        Snapshot, apply, and restore on failure.

        Raises
        ------
        PatchApplyError
            Apply failed; ``exc.rollback`` reports ``attempted=True, ok=True``.
        RollbackError
            Apply failed *and* the restore failed (``exc.original`` kept).
        """
        plan = self.create_rollback(actions)
        try:
            return self.apply(actions)
        except PatchApplyError as exc:
            log.warning("Apply failed (%s); restoring %d path(s)", exc, len(plan.entries))
            try:
                exc.rollback = self.rollback(plan, original=exc)
            except RollbackError as rb_exc:
                raise rb_exc from exc
            raise


# ─────────────────────────────────────────────────────────────────────────────
# Convenience
# ─────────────────────────────────────────────────────────────────────────────
def apply_patch(
    patch_json: str,
    workspace: str | Path,
    fmt: PatchFormat | str = PatchFormat.SEARCH_REPLACE,
    *,
    allow_delete: bool = False,
) -> ApplyResult:
    """
    Parse *patch_json* (strict), run the quality gate and apply it to
    *workspace* with rollback. Deletes require ``allow_delete`` here since
    there is no plan to carry deletion intent.
    """
    from patchwright.output_parser import check_patch_quality, parse_patch_output

    payload = parse_patch_output(patch_json, fmt, strict=True)
    check_patch_quality(payload.actions, None, allow_delete=allow_delete)
    return PatchApplier(workspace).apply_with_rollback(payload.actions)


def _cli(argv: list[str] | None = None) -> int:
    """
    Small CLI for manual / scripted invocation.
    """
    parser = argparse.ArgumentParser(prog="apply_patch.py", description="Apply a builder payload to a workspace.")
    parser.add_argument("payload", help="JSON string payload or '-' to read from stdin.")
    parser.add_argument("workspace", help="Workspace root directory.")
    parser.add_argument("--format", default=PatchFormat.SEARCH_REPLACE.value, choices=[f.value for f in PatchFormat])
    parser.add_argument("--allow-delete", action="store_true", help="Permit delete actions.")
    args = parser.parse_args(argv)

    payload = sys.stdin.read() if args.payload == "-" else args.payload
    result = apply_patch(payload, args.workspace, args.format, allow_delete=args.allow_delete)
    print(json.dumps({"touched": list(result.touched)}))
    return 0


__all__ = ["PatchApplier", "apply_patch", "replace_once"]


if __name__ == "__main__":
    sys.exit(_cli())
