#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tool registry tests (`patchwright.tools`).

Tools never raise into the loop for ordinary failures: bad arguments, unknown
tools, gate rejections and apply errors come back as ``ToolResult(ok=False)``
so the model can react. Only a failed rollback escapes.
"""
from __future__ import annotations

from pathlib import Path

import pytest

from apply_patch import PatchApplier
from patchwright.errors import RollbackError
from patchwright.events import PATCH_APPLIED, PATCH_ROLLBACK, RunLogger
from patchwright.tools import ToolContext, ToolSpec, workspace_tools


@pytest.fixture()
def ctx(tmp_path: Path) -> ToolContext:
    (tmp_path / "a.py").write_text("A = 1\n", encoding="utf-8")
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "b.py").write_text("B = 1\n", encoding="utf-8")
    return ToolContext(applier=PatchApplier(tmp_path), events=RunLogger())


def test_registry_describes_openai_tools() -> None:
    reg = workspace_tools()
    assert reg.names() == ["read_file", "list_files", "write_file", "replace_in_file", "delete_file"]
    assert "write_file" in reg and len(reg) == 5
    spec = reg.describe()[0]
    assert spec["type"] == "function" and spec["function"]["name"] == "read_file"
    with pytest.raises(ValueError, match="already registered"):
        reg.register(ToolSpec("read_file", "dup", {"type": "object"}, lambda a, c: ""))


def test_read_and_list(ctx: ToolContext) -> None:
    reg = workspace_tools()
    assert reg.execute("read_file", {"path": "a.py"}, ctx).output == "A = 1\n"
    listing = reg.execute("list_files", {}, ctx).output.splitlines()
    assert listing == ["a.py", "pkg/b.py"]
    missing = reg.execute("read_file", {"path": "zzz.py"}, ctx)
    assert not missing.ok and "File not found" in missing.error


def test_write_replace_delete_track_touched(ctx: ToolContext) -> None:
    reg = workspace_tools()
    assert reg.execute("write_file", {"path": "new.py", "content": "N = 1\n"}, ctx).ok
    assert reg.execute("replace_in_file", {"path": "a.py", "search_block": "A = 1", "replace_block": "A = 2"}, ctx).ok
    assert reg.execute("delete_file", {"path": "pkg/b.py"}, ctx).ok
    assert ctx.touched == ["new.py", "a.py", "pkg/b.py"]
    assert ctx.events.names().count(PATCH_APPLIED) == 3
    assert (ctx.applier.root / "a.py").read_text(encoding="utf-8") == "A = 2\n"


def test_errors_are_reported_not_raised(ctx: ToolContext) -> None:
    reg = workspace_tools()
    unknown = reg.execute("rm_rf", {}, ctx)
    assert unknown.error == "Unknown tool: rm_rf"
    bad_args = reg.execute("write_file", {"path": "x.py"}, ctx)
    assert bad_args.error.startswith("Invalid arguments for write_file")
    no_match = reg.execute("replace_in_file", {"path": "a.py", "search_block": "nope", "replace_block": "x"}, ctx)
    assert not no_match.ok and "Search block not found" in no_match.error
    assert no_match.as_message().startswith("ERROR: ")
    assert PATCH_ROLLBACK in ctx.events.names()
    escape = reg.execute("write_file", {"path": "../evil.py", "content": "x"}, ctx)
    assert not escape.ok
    assert ctx.touched == []


def test_gate_runs_before_apply(ctx: ToolContext) -> None:
    def refuse(actions):
        raise ValueError(f"refused {actions[0].file}")

    ctx.gate = refuse
    res = workspace_tools().execute("write_file", {"path": "a.py", "content": "A = 9\n"}, ctx)
    assert res.error == "refused a.py"
    assert (ctx.applier.root / "a.py").read_text(encoding="utf-8") == "A = 1\n"


def test_rollback_failure_escapes(ctx: ToolContext, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_apply(actions):
        raise RollbackError(RuntimeError("apply"), ["a.py: disk gone"])

    monkeypatch.setattr(ctx.applier, "apply_with_rollback", broken_apply)
    with pytest.raises(RollbackError):
        workspace_tools().execute("write_file", {"path": "a.py", "content": "A = 3\n"}, ctx)


def test_snapshot_keeps_first_touch_and_restores_it(ctx: ToolContext) -> None:
    reg = workspace_tools()
    reg.execute("write_file", {"path": "a.py", "content": "A = 2\n"}, ctx)
    reg.execute("write_file", {"path": "a.py", "content": "A = 3\n"}, ctx)
    reg.execute("write_file", {"path": "fresh/c.py", "content": "C = 1\n"}, ctx)

    assert ctx.snapshot["a.py"].content == b"A = 1\n"
    assert not ctx.snapshot["fresh/c.py"].existed

    outcome = ctx.applier.rollback(ctx.rollback_plan())
    assert outcome.ok
    assert (ctx.applier.root / "a.py").read_text(encoding="utf-8") == "A = 1\n"
    assert not (ctx.applier.root / "fresh").exists()


def test_rejected_edit_is_not_snapshotted(ctx: ToolContext) -> None:
    def deny(actions):
        raise ValueError("denied")

    ctx.gate = deny
    assert not workspace_tools().execute("write_file", {"path": "a.py", "content": "A = 9\n"}, ctx).ok
    assert ctx.snapshot == {}
