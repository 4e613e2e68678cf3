"""
===============================================================================
Unit‑tests for *apply_patch.py*
===============================================================================

Goals
-----
* Exercise every supported action:
    • create (new file, nested dirs, overwrite)
    • replace (exact, whitespace‑tolerant, ambiguous, missing)
    • delete
* Verify workspace invariants:
    • path‑traversal / absolute / .git targets blocked
    • snapshot + restore on a failed multi‑action apply (new parents removed)
    • a failing restore surfaces as RollbackError carrying both errors
    • line endings of untouched text survive a replace

All tests run inside a temporary workspace created via the tmp_path fixture.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

import apply_patch as ap
from apply_patch import PatchApplier, apply_patch, replace_once
from patchwright.errors import (
    AmbiguousSearchBlockError,
    PatchApplyError,
    PatchParseError,
    PatchQualityError,
    PathOutsideWorkspaceError,
    RollbackError,
    SearchBlockNotFoundError,
)
from patchwright.models import CreateAction, DeleteAction, ReplaceAction

log = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")


# =============================================================================
# Helpers
# =============================================================================
@pytest.fixture()
def ws(tmp_path: Path) -> Path:
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "mod.py").write_text("def f():\n    return 1\n", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("keep me\n", encoding="utf-8")
    return tmp_path


def _read(p: Path) -> str:
    return p.read_text(encoding="utf-8")


# =============================================================================
# replace_once
# =============================================================================
def test_replace_once_exact_and_whitespace_tolerant() -> None:
    assert replace_once("a = 1\nb = 2\n", "b = 2", "b = 3") == "a = 1\nb = 3\n"
    # indentation drift in the search block still matches a unique region
    assert replace_once("if x:\n    y = 1\n", "if x:\n  y = 1", "if x:\n    y = 2") == "if x:\n    y = 2\n"


def test_replace_once_ambiguous_and_missing() -> None:
    with pytest.raises(AmbiguousSearchBlockError):
        replace_once("x\nx\n", "x", "y", file="dup.py")
    with pytest.raises(SearchBlockNotFoundError, match="Search block not found in nf.py"):
        replace_once("abc", "zzz", "y", file="nf.py")


# =============================================================================
# Applier
# =============================================================================
def test_create_replace_delete(ws: Path) -> None:
    applier = PatchApplier(ws)
    result = applier.apply_with_rollback(
        [
            CreateAction("pkg/sub/new.py", "VALUE = 1\n"),
            ReplaceAction("pkg/mod.py", "return 1", "return 2"),
            DeleteAction("notes.txt"),
        ]
    )
    assert result.touched == ("pkg/sub/new.py", "pkg/mod.py", "notes.txt")
    assert _read(ws / "pkg" / "sub" / "new.py") == "VALUE = 1\n"
    assert "return 2" in _read(ws / "pkg" / "mod.py")
    assert not (ws / "notes.txt").exists()


def test_replace_keeps_crlf(ws: Path) -> None:
    target = ws / "win.txt"
    target.write_bytes(b"one\r\ntwo\r\n")
    PatchApplier(ws).apply([ReplaceAction("win.txt", "two", "TWO")])
    assert target.read_bytes() == b"one\r\nTWO\r\n"


@pytest.mark.parametrize("bad", ["../escape.py", "/etc/passwd", ".git/config", "a/../../b.py"])
def test_escapes_are_blocked(ws: Path, bad: str) -> None:
    with pytest.raises(PathOutsideWorkspaceError):
        PatchApplier(ws).apply_with_rollback([CreateAction(bad, "x = 1\n")])


def test_symlink_escape_is_blocked(ws: Path, tmp_path_factory) -> None:
    outside = tmp_path_factory.mktemp("outside")
    (ws / "link").symlink_to(outside, target_is_directory=True)
    with pytest.raises(PathOutsideWorkspaceError, match="outside workspace root"):
        PatchApplier(ws).resolve("link/evil.py")


def test_missing_files_are_errors(ws: Path) -> None:
    applier = PatchApplier(ws)
    with pytest.raises(PatchApplyError, match="missing file"):
        applier.apply([ReplaceAction("nope.py", "a", "b")])
    with pytest.raises(PatchApplyError, match="missing file"):
        applier.apply([DeleteAction("nope.py")])


def test_failed_apply_is_rolled_back(ws: Path) -> None:
    before_mod = _read(ws / "pkg" / "mod.py")
    with pytest.raises(SearchBlockNotFoundError) as ei:
        PatchApplier(ws).apply_with_rollback(
            [
                CreateAction("fresh.py", "NEW = 1\n"),
                ReplaceAction("pkg/mod.py", "return 1", "return 5"),
                DeleteAction("notes.txt"),
                ReplaceAction("pkg/mod.py", "does not exist", "x"),
            ]
        )
    assert ei.value.rollback is not None and ei.value.rollback.ok
    assert not (ws / "fresh.py").exists()
    assert _read(ws / "pkg" / "mod.py") == before_mod
    assert _read(ws / "notes.txt") == "keep me\n"


def test_validate_hook_vetoes_write(ws: Path) -> None:
    def reject_syntax_errors(rel: str, text: str) -> None:
        compile(text, rel, "exec")

    applier = PatchApplier(ws, validate_file=reject_syntax_errors)
    with pytest.raises(PatchApplyError, match="Validation rejected pkg/mod.py"):
        applier.apply_with_rollback([ReplaceAction("pkg/mod.py", "return 1", "return (")])
    assert "return 1" in _read(ws / "pkg" / "mod.py")


def test_failed_restore_raises_rollback_error(ws: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    applier = PatchApplier(ws)
    real_write = ap._atomic_write_bytes
    calls = {"n": 0}

    def flaky_write(dest: Path, data: bytes) -> None:
        calls["n"] += 1
        if calls["n"] > 1:  # first write is the apply, later ones are the restore
            raise OSError("disk full")
        real_write(dest, data)

    monkeypatch.setattr(ap, "_atomic_write_bytes", flaky_write)
    with pytest.raises(RollbackError) as ei:
        applier.apply_with_rollback(
            [ReplaceAction("pkg/mod.py", "return 1", "return 2"), ReplaceAction("notes.txt", "missing", "x")]
        )
    assert isinstance(ei.value.original, SearchBlockNotFoundError)
    assert ei.value.rollback.ok is False
    assert "disk full" in str(ei.value)


def test_rollback_removes_directories_a_create_made(ws: Path) -> None:
    applier = PatchApplier(ws)
    with pytest.raises(SearchBlockNotFoundError):
        applier.apply_with_rollback(
            [CreateAction("deep/er/new.py", "N = 1\n"), ReplaceAction("pkg/mod.py", "missing", "x")]
        )
    assert not (ws / "deep").exists()
    assert (ws / "pkg").is_dir()


def test_exists_only_reports_workspace_files(ws: Path) -> None:
    applier = PatchApplier(ws)
    assert applier.exists("pkg/mod.py")
    assert not applier.exists("pkg")
    assert not applier.exists("pkg/nope.py")
    assert not applier.exists("../outside.py")


# =============================================================================
# apply_patch convenience + CLI
# =============================================================================
def test_apply_patch_json(ws: Path) -> None:
    payload = json.dumps({"files": [{"path": "docs/readme.md", "content": "# Docs\n"}]})
    result = apply_patch(payload, ws, "file_writes")
    assert result.touched == ("docs/readme.md",)


def test_apply_patch_refuses_invalid_before_touching(ws: Path) -> None:
    payload = json.dumps(
        {
            "patches": [
                {"action": "create", "file": "a.py", "content": "A = 1\n"},
                {"action": "create", "file": "b.py", "content": "..."},
            ]
        }
    )
    with pytest.raises(PatchParseError):
        apply_patch(payload, ws)
    assert not (ws / "a.py").exists()


def test_apply_patch_delete_needs_flag(ws: Path) -> None:
    payload = json.dumps({"patches": [{"action": "delete", "file": "notes.txt"}]})
    with pytest.raises(PatchQualityError):
        apply_patch(payload, ws)
    apply_patch(payload, ws, allow_delete=True)
    assert not (ws / "notes.txt").exists()


def test_cli_applies_payload(ws: Path, capsys: pytest.CaptureFixture) -> None:
    payload = json.dumps({"patches": [{"action": "create", "file": "cli.txt", "content": "hi\n"}]})
    assert ap._cli([payload, str(ws)]) == 0
    assert json.loads(capsys.readouterr().out) == {"touched": ["cli.txt"]}
