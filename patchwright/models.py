#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Patch & Run Data Model
===============================================================================

Value types shared by the parser, applier, interpreter and builder runner.

Patch actions form a closed union (``PatchAction``). Code that dispatches on an
action kind uses an isinstance chain ending in ``raise TypeError`` so an
unhandled kind fails loudly instead of falling through.

Plan and Context Bundle are immutable inputs for one builder invocation; patch
payloads are ephemeral and never persisted by this package.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union


# =============================================================================
# Formats & modes
# =============================================================================
class PatchFormat(str, Enum):
    """Wire shape requested from the model for one attempt."""

    SEARCH_REPLACE = "search_replace"  # {"patches": [...]}
    FILE_WRITES = "file_writes"  # {"files": [{"path", "content"}]}

    @property
    def array_key(self) -> str:
        return "patches" if self is PatchFormat.SEARCH_REPLACE else "files"

    @property
    def other(self) -> "PatchFormat":
        if self is PatchFormat.SEARCH_REPLACE:
            return PatchFormat.FILE_WRITES
        return PatchFormat.SEARCH_REPLACE


class BuilderMode(str, Enum):
    """Response modes of the builder state machine."""

    TOOL_CALLS = "tool_calls"
    PATCH_JSON = "patch_json"
    FREEFORM = "freeform"


# =============================================================================
# Patch actions (closed union)
# =============================================================================
@dataclass(frozen=True)
class CreateAction:
    """Write *content* as the full body of *file* (new or overwritten)."""

    file: str
    content: str
    action: str = field(default="create", init=False)


@dataclass(frozen=True)
class ReplaceAction:
    """Replace exactly one occurrence of *search_block* inside *file*."""

    file: str
    search_block: str
    replace_block: str
    action: str = field(default="replace", init=False)


@dataclass(frozen=True)
class DeleteAction:
    """Remove *file* from the workspace."""

    file: str
    action: str = field(default="delete", init=False)


PatchAction = Union[CreateAction, ReplaceAction, DeleteAction]
ACTION_TYPES: Tuple[type, ...] = (CreateAction, ReplaceAction, DeleteAction)


def action_to_dict(action: PatchAction) -> Dict[str, str]:
    """Serialise *action* back to its format‑A wire entry."""
    if isinstance(action, ReplaceAction):
        return {
            "action": "replace",
            "file": action.file,
            "search_block": action.search_block,
            "replace_block": action.replace_block,
        }
    if isinstance(action, CreateAction):
        return {"action": "create", "file": action.file, "content": action.content}
    if isinstance(action, DeleteAction):
        return {"action": "delete", "file": action.file}
    raise TypeError(f"Unknown patch action: {type(action).__name__}")


@dataclass(frozen=True)
class PatchPayload:
    """Validated set of actions plus the wire format it was parsed from."""

    format: PatchFormat
    actions: Tuple[PatchAction, ...]

    @property
    def files(self) -> List[str]:
        return list(dict.fromkeys(a.file for a in self.actions))

    def to_wire(self) -> Dict[str, Any]:
        """Render the payload back into its own wire shape."""
        if self.format is PatchFormat.SEARCH_REPLACE:
            return {"patches": [action_to_dict(a) for a in self.actions]}
        files = []
        for a in self.actions:
            if not isinstance(a, CreateAction):
                raise TypeError(f"file_writes payload cannot carry {a.action!r} actions")
            files.append({"path": a.file, "content": a.content})
        return {"files": files}


# =============================================================================
# Plan & context bundle (inputs)
# =============================================================================
def _str_list(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v) for v in value if isinstance(v, str) and v.strip())


@dataclass(frozen=True)
class Plan:
    """What the planning role wants changed and where."""

    steps: Tuple[str, ...] = ()
    target_files: Tuple[str, ...] = ()
    create_files: Tuple[str, ...] = ()
    risk_assessment: str = ""
    verification: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Plan":
        return cls(
            steps=_str_list(data.get("steps")),
            target_files=_str_list(data.get("target_files")),
            create_files=_str_list(data.get("create_files")),
            risk_assessment=str(data.get("risk_assessment") or ""),
            verification=_str_list(data.get("verification")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": list(self.steps),
            "target_files": list(self.target_files),
            "create_files": list(self.create_files),
            "risk_assessment": self.risk_assessment,
            "verification": list(self.verification),
        }

    def prose(self) -> str:
        """All human-readable plan text (used for deletion-intent checks)."""
        return "\n".join([*self.steps, self.risk_assessment, *self.verification])


@dataclass(frozen=True)
class ContextFile:
    path: str
    role: str = "focus"  # "focus" | "periphery"
    content: str = ""


@dataclass(frozen=True)
class ContextBundle:
    """Read-only material the builder may consult."""

    request: str = ""
    files: Tuple[ContextFile, ...] = ()
    allow_write_paths: Tuple[str, ...] = ()
    read_only_paths: Tuple[str, ...] = ()
    serialized: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContextBundle":
        files = []
        for entry in data.get("files") or []:
            if isinstance(entry, Mapping) and isinstance(entry.get("path"), str):
                files.append(
                    ContextFile(
                        path=entry["path"],
                        role=str(entry.get("role") or "focus"),
                        content=str(entry.get("content") or ""),
                    )
                )
        serialized = data.get("serialized")
        if isinstance(serialized, Mapping):
            serialized = serialized.get("content")
        return cls(
            request=str(data.get("request") or ""),
            files=tuple(files),
            allow_write_paths=_str_list(data.get("allow_write_paths")),
            read_only_paths=_str_list(data.get("read_only_paths")),
            serialized=str(serialized or ""),
        )

    def render(self) -> str:
        """Textual rendering used verbatim in the builder prompt."""
        if self.serialized:
            return self.serialized
        parts = []
        if self.request:
            parts.append(f"REQUEST:\n{self.request}")
        for f in self.files:
            parts.append(f"FILE ({f.role}): {f.path}\n{f.content}")
        policy = ["WRITE POLICY:"]
        policy.append("- allow: " + (", ".join(self.allow_write_paths) or "<plan targets>"))
        policy.append("- read-only: " + (", ".join(self.read_only_paths) or "<none>"))
        parts.append("\n".join(policy))
        return "\n\n".join(parts)


@dataclass(frozen=True)
class ContextRequest:
    """The builder asked for more information instead of producing edits."""

    reason: str
    queries: Tuple[str, ...] = ()
    files: Tuple[str, ...] = ()


# =============================================================================
# Apply / rollback
# =============================================================================
@dataclass(frozen=True)
class RollbackEntry:
    file: str
    resolved: Path
    existed: bool
    content: Optional[bytes] = None
    # Parent directories missing at snapshot time (deepest first).
    created_dirs: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class RollbackPlan:
    """Pre-mutation snapshot of every path an apply may touch."""

    entries: Tuple[RollbackEntry, ...] = ()

    @property
    def files(self) -> List[str]:
        return [e.file for e in self.entries]


@dataclass(frozen=True)
class RollbackOutcome:
    attempted: bool
    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ApplyResult:
    touched: Tuple[str, ...] = ()
    rollback: Optional[RollbackOutcome] = None


# =============================================================================
# Run bookkeeping
# =============================================================================
@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: Optional["Usage"]) -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens


@dataclass(frozen=True)
class AttemptRecord:
    """One rung of the recovery ladder: where we were and what went wrong."""

    step: str
    mode: str
    format: Optional[str]
    error: Optional[str] = None
    category: Optional[str] = None

    def describe(self) -> str:
        fmt = f"/{self.format}" if self.format else ""
        return f"[{self.step} {self.mode}{fmt}] {self.error or 'ok'}"


@dataclass
class BuilderRunResult:
    """Outcome of one builder invocation: a context request XOR an apply result."""

    final_message: str
    mode: BuilderMode
    patch_format: Optional[PatchFormat] = None
    usage: Usage = field(default_factory=Usage)
    context_request: Optional[ContextRequest] = None
    apply_result: Optional[ApplyResult] = None
    tool_calls_executed: int = 0
    attempts: List[AttemptRecord] = field(default_factory=list)
    messages: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly record a caller can persist as a job-phase entry."""
        return {
            "final_message": self.final_message,
            "mode": self.mode.value,
            "patch_format": self.patch_format.value if self.patch_format else None,
            "usage": asdict(self.usage),
            "context_request": asdict(self.context_request) if self.context_request else None,
            "touched": list(self.apply_result.touched) if self.apply_result else [],
            "tool_calls_executed": self.tool_calls_executed,
            "attempts": [asdict(a) for a in self.attempts],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)


def normalize_paths(paths: Sequence[str]) -> Tuple[str, ...]:
    """Strip whitespace, leading './' and trailing '/' from *paths*; drop empties."""
    out = []
    for p in paths:
        s = p.strip().replace("\\", "/")
        while s.startswith("./"):
            s = s[2:]
        s = s.rstrip("/")
        if s:
            out.append(s)
    return tuple(dict.fromkeys(out))


__all__ = [
    "PatchFormat",
    "BuilderMode",
    "CreateAction",
    "ReplaceAction",
    "DeleteAction",
    "PatchAction",
    "ACTION_TYPES",
    "action_to_dict",
    "PatchPayload",
    "Plan",
    "ContextFile",
    "ContextBundle",
    "ContextRequest",
    "RollbackEntry",
    "RollbackPlan",
    "RollbackOutcome",
    "ApplyResult",
    "Usage",
    "AttemptRecord",
    "BuilderRunResult",
    "normalize_paths",
]
