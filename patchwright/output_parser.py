#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Builder Output Parser
===============================================================================

Purpose
-------
Turn raw builder output into a validated ``PatchPayload`` for one declared
wire format, or fail with a classified ``PatchParseError``.

Public API
----------
* ``parse_patch_output(raw, fmt, *, strict=True, plan=None) -> PatchPayload``
* ``payload_from_data(data, fmt) -> PatchPayload``
* ``check_patch_quality(actions, plan, *, allow_delete=False)``
* ``check_create_targets(actions, plan, *, known, exists)``
* ``has_deletion_intent(plan, path) -> bool``
* ``parse_context_request(raw) -> ContextRequest | None``

Strict vs lenient
-----------------
Strict mode (the wire contract) accepts a bare JSON object, or a JSON object
that is the *only* thing inside one fenced block. Prose around the JSON is a
``mixed_content`` error. Lenient mode (interpreter fast path, CLI) digs the
first JSON object out of anything and also accepts a bare action array under
the search/replace format.

Validation happens completely before a payload is returned, so the applier
never sees a partially valid payload.
"""
from __future__ import annotations

import json
import re
from pathlib import PurePosixPath
from typing import Any, Callable, Iterable, List, Optional

from patch_validator import is_placeholder_text, normalize_rel_path, validate_payload
from patchwright import get_logger
from patchwright.errors import PatchParseError, PatchQualityError
from patchwright.models import (
    ContextRequest,
    CreateAction,
    DeleteAction,
    PatchAction,
    PatchFormat,
    PatchPayload,
    Plan,
    ReplaceAction,
)
from patchwright.normalizer import balanced_span, normalize_patch_output, strip_code_fences

log = get_logger(__name__)

_DELETE_INTENT_RE = re.compile(
    r"\b(?:delete[sd]?|deleting|remov(?:e|es|ed|ing)|drop(?:s|ped|ping)?|unlink|rm|get rid of|eliminat(?:e|es|ing))\b",
    re.IGNORECASE,
)
_NEEDS_CONTEXT_RE = re.compile(r"needs_context", re.IGNORECASE)


def _snippet(text: str, limit: int = 160) -> str:
    s = (text or "").strip().replace("\n", " ")
    return s if len(s) <= limit else s[:limit] + "…"


# ─────────────────────────────────────────────────────────────────────────────
# Context requests
# ─────────────────────────────────────────────────────────────────────────────
def _strings(value: Any) -> tuple:
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if isinstance(value, list):
        return tuple(v for v in value if isinstance(v, str) and v.strip())
    return ()


def parse_context_request(raw: str) -> Optional[ContextRequest]:
    """
    Detect a "needs more context" signal in *raw*.

    Accepted JSON: ``{"needs_context": true, ...}`` (also ``request_context`` /
    ``context_request``) or ``{"type": "needs_context", ...}`` with optional
    ``queries``, ``files`` and ``reason``. Plain text mentioning
    ``needs_context`` is accepted with reason ``"needs_context"``.
    """
    if not raw or not raw.strip():
        return None
    data = normalize_patch_output(raw)
    if isinstance(data, dict):
        flagged = any(data.get(k) is True for k in ("needs_context", "request_context", "context_request"))
        if flagged or data.get("type") == "needs_context":
            reason = data.get("reason")
            return ContextRequest(
                reason=reason.strip() if isinstance(reason, str) and reason.strip() else "needs_context",
                queries=_strings(data.get("queries")),
                files=_strings(data.get("files")),
            )
        # Any other object is a payload attempt (or an explicit "false").
        return None
    if _NEEDS_CONTEXT_RE.search(raw):
        return ContextRequest(reason="needs_context")
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Decoding
# ─────────────────────────────────────────────────────────────────────────────
def _decode_strict(text: str) -> Any:
    body = strip_code_fences(text).strip()
    if not body.startswith("{"):
        if balanced_span(body):
            raise PatchParseError(
                "mixed_content",
                f"Patch output mixes prose with JSON; expected a single JSON object. Got: {_snippet(text)!r}",
            )
        raise PatchParseError("invalid_json", f"Patch output is not valid JSON. Got: {_snippet(text)!r}")
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        span = balanced_span(body)
        if span and body[len(span):].strip():
            raise PatchParseError(
                "mixed_content", "Patch output has trailing text after the JSON object"
            ) from exc
        raise PatchParseError("invalid_json", f"Patch output is not valid JSON: {exc.msg}") from exc


def _decode_lenient(text: str, fmt: PatchFormat) -> Any:
    data = normalize_patch_output(text)
    if data is None:
        raise PatchParseError("invalid_json", f"Patch output is not valid JSON. Got: {_snippet(text)!r}")
    if isinstance(data, list) and fmt is PatchFormat.SEARCH_REPLACE:
        return {"patches": data}
    return data


# ─────────────────────────────────────────────────────────────────────────────
# Payload construction
# ─────────────────────────────────────────────────────────────────────────────
def payload_from_data(data: Any, fmt: PatchFormat | str) -> PatchPayload:
    """Validate decoded *data* under *fmt* and build the typed payload."""
    fmt = PatchFormat(fmt)
    validate_payload(data, fmt)

    actions: List[PatchAction] = []
    if fmt is PatchFormat.SEARCH_REPLACE:
        for entry in data["patches"]:
            path = normalize_rel_path(entry["file"])
            kind = entry["action"]
            if kind == "replace":
                actions.append(ReplaceAction(path, entry["search_block"], entry["replace_block"]))
            elif kind == "create":
                actions.append(CreateAction(path, entry["content"]))
            elif kind == "delete":
                actions.append(DeleteAction(path))
            else:  # pragma: no cover - validate_payload rejects this first
                raise PatchParseError("invalid_action", f"Unknown patch action {kind!r}")
    else:
        for entry in data["files"]:
            actions.append(CreateAction(normalize_rel_path(entry["path"]), entry["content"]))
    return PatchPayload(format=fmt, actions=tuple(actions))


def parse_patch_output(
    raw: str,
    fmt: PatchFormat | str,
    *,
    strict: bool = True,
    plan: Optional[Plan] = None,
) -> PatchPayload:
    """
    Parse builder output *raw* as a payload of format *fmt*.

    Parameters
    ----------
    raw : str
        Model output.
    fmt : PatchFormat | str
        Declared wire format for this attempt. The other format's top‑level
        key is never interpreted.
    strict : bool
        Reject prose around the JSON (see module docstring).
    plan : Plan | None
        When given, the quality gate (including deletion intent) runs too.

    Raises
    ------
    PatchParseError
    """
    fmt = PatchFormat(fmt)
    text = raw or ""
    if not text.strip():
        raise PatchParseError("empty_output", "Patch output is empty")

    data = _decode_strict(text) if strict else _decode_lenient(text, fmt)
    payload = payload_from_data(data, fmt)
    if plan is not None:
        check_patch_quality(payload.actions, plan)
    log.debug("Parsed %s payload with %d action(s)", fmt.value, len(payload.actions))
    return payload


# ─────────────────────────────────────────────────────────────────────────────
# Quality gate
# ─────────────────────────────────────────────────────────────────────────────
def has_deletion_intent(plan: Optional[Plan], path: str) -> bool:
    """
    True when the plan's prose uses a deletion verb *and* the plan mentions
    *path* (full path, basename or as a target file).
    """
    if plan is None:
        return False
    prose = plan.prose()
    if not _DELETE_INTENT_RE.search(prose):
        return False
    norm = normalize_rel_path(path)
    mentioned = {normalize_rel_path(p) for p in (*plan.target_files, *plan.create_files)}
    if norm in mentioned:
        return True
    return norm in prose or PurePosixPath(norm).name in prose


def check_patch_quality(
    actions: Iterable[PatchAction],
    plan: Optional[Plan],
    *,
    allow_delete: bool = False,
) -> None:
    """
    Gate run before every apply, however the payload was produced.

    Raises
    ------
    PatchQualityError
        ``placeholder`` or ``disallowed_delete``.
    """
    for action in actions:
        if isinstance(action, ReplaceAction):
            if is_placeholder_text(action.search_block, fragment=True) or is_placeholder_text(
                action.replace_block, fragment=True
            ):
                raise PatchQualityError("placeholder", f"Replace for {action.file} has placeholder search/replace text")
        elif isinstance(action, CreateAction):
            if is_placeholder_text(action.content):
                raise PatchQualityError("placeholder", f"Create for {action.file} has placeholder content")
        elif isinstance(action, DeleteAction):
            if not allow_delete and not has_deletion_intent(plan, action.file):
                raise PatchQualityError(
                    "disallowed_delete",
                    f"Delete of {action.file} is not backed by deletion intent in the plan",
                )
        else:
            raise TypeError(f"Unknown patch action: {type(action).__name__}")


def check_create_targets(
    actions: Iterable[PatchAction],
    plan: Optional[Plan],
    *,
    known: Iterable[str] = (),
    exists: Callable[[str], bool],
) -> None:
    """
    A create may only target a file that already exists, is part of the
    context (*known*), or is covered by the plan's ``create_files``.

    Raises
    ------
    PatchQualityError
        ``unplanned_create``.
    """
    known_paths = {normalize_rel_path(p) for p in known}
    creatable = [normalize_rel_path(p) for p in (plan.create_files if plan else ())]
    for action in actions:
        if not isinstance(action, CreateAction):
            continue
        norm = normalize_rel_path(action.file)
        if norm in known_paths or exists(norm):
            continue
        if any(norm == c or norm.startswith(c + "/") for c in creatable if c):
            continue
        raise PatchQualityError(
            "unplanned_create",
            f"Create of new file {action.file} is not listed in the plan's create_files",
        )


__all__ = [
    "parse_patch_output",
    "payload_from_data",
    "check_patch_quality",
    "check_create_targets",
    "has_deletion_intent",
    "parse_context_request",
]
