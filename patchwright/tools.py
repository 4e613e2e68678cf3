#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Tool Registry & Workspace Tools
===============================================================================

Purpose
-------
Tools the builder can call in ``tool_calls`` mode. The registry owns the
OpenAI function schemas (``describe``), validates arguments with
``jsonschema`` before a handler runs, and turns handler failures into
``ToolResult(ok=False, error=...)`` so the model sees the error and can react.

Workspace tools
---------------
read_file        – read a workspace file (read‑only paths are readable)
list_files       – list files under a directory
write_file       – full‑file write            (→ CreateAction)
replace_in_file  – unique search/replace      (→ ReplaceAction)
delete_file      – remove a file              (→ DeleteAction)

Mutating tools never touch the filesystem directly: each call builds patch
actions and sends them through the same gate (quality + path authorization)
and ``PatchApplier.apply_with_rollback`` used for JSON payloads. A failed
restore (``RollbackError``) is not a tool error; it propagates and ends the run.

Each path is also snapshotted the first time a tool edits it
(``ToolContext.snapshot``), so the builder can undo every tool edit of a run
that does not end in an applied result.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from jsonschema import Draft7Validator

from apply_patch import PatchApplier
from patchwright import get_logger
from patchwright.errors import PatchError, RollbackError
from patchwright.events import PATCH_APPLIED, PATCH_ROLLBACK, RunLogger
from patchwright.models import CreateAction, DeleteAction, PatchAction, ReplaceAction, RollbackEntry, RollbackPlan

log = get_logger(__name__)

MAX_READ_CHARS = int(os.getenv("PATCHWRIGHT_TOOL_READ_CHARS", "60000"))
MAX_LIST_ENTRIES = 500


# ─────────────────────────────────────────────────────────────────────────────
# Types
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class ToolResult:
    ok: bool
    output: str = ""
    error: Optional[str] = None

    def as_message(self) -> str:
        return self.output if self.ok else f"ERROR: {self.error}"


@dataclass
class ToolContext:
    """Per‑run state shared by tool handlers."""

    applier: PatchApplier
    gate: Callable[[Sequence[PatchAction]], None] = lambda actions: None
    events: RunLogger = field(default_factory=RunLogger)
    touched: List[str] = field(default_factory=list)
    snapshot: Dict[str, RollbackEntry] = field(default_factory=dict)

    def remember(self, actions: Sequence[PatchAction]) -> None:
        """Snapshot paths not yet edited in this run (first touch wins)."""
        for entry in self.applier.create_rollback(actions).entries:
            self.snapshot.setdefault(entry.file, entry)

    def rollback_plan(self) -> RollbackPlan:
        return RollbackPlan(tuple(self.snapshot.values()))


Handler = Callable[[Dict[str, Any], ToolContext], str]


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Handler

    def __post_init__(self) -> None:
        Draft7Validator.check_schema(self.parameters)
        self._validator = Draft7Validator(self.parameters)

    def openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


class ToolRegistry:
    """Name → ``ToolSpec`` map with validated execution."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def describe(self) -> List[Dict[str, Any]]:
        """OpenAI ``tools=[...]`` list for every registered tool."""
        return [spec.openai_schema() for spec in self._tools.values()]

    def execute(self, name: str, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult(ok=False, error=f"Unknown tool: {name}")
        errors = sorted(spec._validator.iter_errors(args or {}), key=lambda e: list(e.path))
        if errors:
            return ToolResult(ok=False, error=f"Invalid arguments for {name}: {errors[0].message}")
        try:
            output = spec.handler(args or {}, context)
        except RollbackError:
            raise
        except (PatchError, OSError, ValueError) as exc:
            log.info("Tool %s failed: %s", name, exc)
            return ToolResult(ok=False, error=str(exc))
        return ToolResult(ok=True, output=output)


# ─────────────────────────────────────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────────────────────────────────────
def _apply(ctx: ToolContext, actions: Sequence[PatchAction]) -> str:
    ctx.gate(actions)
    ctx.remember(actions)
    try:
        result = ctx.applier.apply_with_rollback(actions)
    except RollbackError as exc:
        ctx.events.event(PATCH_ROLLBACK, source="tool", attempted=True, ok=False, error=str(exc))
        raise
    except PatchError as exc:
        rb = getattr(exc, "rollback", None)
        if rb is not None:
            ctx.events.event(PATCH_ROLLBACK, source="tool", attempted=rb.attempted, ok=rb.ok, error=str(exc))
        raise
    for path in result.touched:
        if path not in ctx.touched:
            ctx.touched.append(path)
    ctx.events.event(PATCH_APPLIED, source="tool", touched=list(result.touched))
    return f"ok: {', '.join(result.touched)}"


def _read_file(args: Dict[str, Any], ctx: ToolContext) -> str:
    path = ctx.applier.resolve(args["path"])
    if not path.is_file():
        raise ValueError(f"File not found: {args['path']}")
    text = path.read_bytes().decode("utf-8", errors="replace")
    if len(text) > MAX_READ_CHARS:
        return text[:MAX_READ_CHARS] + f"\n…[truncated {len(text) - MAX_READ_CHARS} chars]"
    return text


def _list_files(args: Dict[str, Any], ctx: ToolContext) -> str:
    rel = args.get("path") or "."
    base = ctx.applier.root if rel in (".", "") else ctx.applier.resolve(rel)
    if not base.is_dir():
        raise ValueError(f"Not a directory: {rel}")
    out: List[str] = []
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(d for d in dirnames if d != ".git")
        for fn in sorted(filenames):
            out.append(os.path.relpath(os.path.join(dirpath, fn), ctx.applier.root).replace(os.sep, "/"))
            if len(out) >= MAX_LIST_ENTRIES:
                return "\n".join(out + ["…"])
    return "\n".join(out)


def _write_file(args: Dict[str, Any], ctx: ToolContext) -> str:
    return _apply(ctx, [CreateAction(args["path"], args["content"])])


def _replace_in_file(args: Dict[str, Any], ctx: ToolContext) -> str:
    return _apply(ctx, [ReplaceAction(args["path"], args["search_block"], args["replace_block"])])


def _delete_file(args: Dict[str, Any], ctx: ToolContext) -> str:
    return _apply(ctx, [DeleteAction(args["path"])])


def _obj(props: Dict[str, Any], required: Sequence[str]) -> Dict[str, Any]:
    return {"type": "object", "properties": props, "required": list(required), "additionalProperties": False}


_STR = {"type": "string", "minLength": 1}


def workspace_tools() -> ToolRegistry:
    """Registry pre‑loaded with the built‑in workspace tools."""
    reg = ToolRegistry()
    reg.register(ToolSpec("read_file", "Read a workspace file (UTF-8).", _obj({"path": _STR}, ["path"]), _read_file))
    reg.register(
        ToolSpec(
            "list_files",
            "List files under a workspace directory (default: the root).",
            _obj({"path": {"type": "string"}}, []),
            _list_files,
        )
    )
    reg.register(
        ToolSpec(
            "write_file",
            "Write the COMPLETE content of a file (creates or overwrites).",
            _obj({"path": _STR, "content": {"type": "string"}}, ["path", "content"]),
            _write_file,
        )
    )
    reg.register(
        ToolSpec(
            "replace_in_file",
            "Replace one exact, unique block of text in an existing file.",
            _obj({"path": _STR, "search_block": _STR, "replace_block": {"type": "string"}}, ["path", "search_block", "replace_block"]),
            _replace_in_file,
        )
    )
    reg.register(
        ToolSpec(
            "delete_file",
            "Delete a file. Only when the plan asks for a deletion.",
            _obj({"path": _STR}, ["path"]),
            _delete_file,
        )
    )
    return reg


__all__ = ["ToolResult", "ToolContext", "ToolSpec", "ToolRegistry", "workspace_tools"]
