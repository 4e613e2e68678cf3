#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for `patchwright.output_parser`.

Covers
------
* strict wire contract (bare JSON or one fenced block; prose is mixed_content)
* lenient decoding used by the interpreter fast path
* format purity (the other format's key is never interpreted)
* the quality gate: placeholders, deletion intent and new-file creates
* context request detection
"""
from __future__ import annotations

import json

import pytest

from patchwright.errors import PatchParseError, PatchQualityError
from patchwright.models import CreateAction, DeleteAction, PatchFormat, Plan, ReplaceAction
from patchwright.output_parser import (
    check_create_targets,
    check_patch_quality,
    has_deletion_intent,
    parse_context_request,
    parse_patch_output,
)

SR = PatchFormat.SEARCH_REPLACE
FW = PatchFormat.FILE_WRITES

REPLACE = {"action": "replace", "file": "./src/a.py", "search_block": "a = 1", "replace_block": "a = 2"}


def _codes(raw: str, fmt: PatchFormat = SR, **kw) -> str:
    with pytest.raises(PatchParseError) as ei:
        parse_patch_output(raw, fmt, **kw)
    return ei.value.code


# ─────────────────────────────────────────────────────────────────────────────
# Strict parsing
# ─────────────────────────────────────────────────────────────────────────────
def test_bare_json_is_parsed_into_typed_actions() -> None:
    payload = parse_patch_output(json.dumps({"patches": [REPLACE, {"action": "delete", "file": "old.py"}]}), SR)
    assert payload.format is SR
    assert payload.actions == (ReplaceAction("src/a.py", "a = 1", "a = 2"), DeleteAction("old.py"))
    assert payload.files == ["src/a.py", "old.py"]


def test_single_fenced_block_is_accepted() -> None:
    raw = "```json\n" + json.dumps({"files": [{"path": "a.txt", "content": "hi\n"}]}) + "\n```"
    payload = parse_patch_output(raw, FW)
    assert payload.actions == (CreateAction("a.txt", "hi\n"),)
    assert payload.to_wire() == {"files": [{"path": "a.txt", "content": "hi\n"}]}


def test_prose_around_json_is_mixed_content() -> None:
    raw = "Here is the patch:\n" + json.dumps({"patches": [REPLACE]})
    assert _codes(raw) == "mixed_content"
    assert _codes(json.dumps({"patches": [REPLACE]}) + "\nHope this helps!") == "mixed_content"


def test_non_json_and_empty_output() -> None:
    assert _codes("I changed a.py to set a = 2") == "invalid_json"
    assert _codes('{"patches": [') == "invalid_json"
    assert _codes("   ") == "empty_output"


def test_format_purity() -> None:
    files_payload = json.dumps({"files": [{"path": "a.py", "content": "x = 1\n"}]})
    assert _codes(files_payload, SR) == "missing_array"
    patches_payload = json.dumps({"patches": [REPLACE]})
    assert _codes(patches_payload, FW) == "missing_array"


def test_ellipsis_placeholder_is_rejected() -> None:
    raw = json.dumps(
        {
            "patches": [
                {"action": "replace", "file": "src/a.py", "search_block": "a = 1", "replace_block": "... rest unchanged ..."}
            ]
        }
    )
    with pytest.raises(PatchParseError) as ei:
        parse_patch_output(raw, SR)
    assert ei.value.code == "placeholder"
    assert ei.value.category == "structural"


# ─────────────────────────────────────────────────────────────────────────────
# Lenient parsing
# ─────────────────────────────────────────────────────────────────────────────
def test_lenient_digs_json_out_of_prose() -> None:
    raw = "Sure! Changes below.\n```json\n" + json.dumps({"patches": [REPLACE]}) + "\n```\nLet me know."
    payload = parse_patch_output(raw, SR, strict=False)
    assert payload.actions[0].file == "src/a.py"


def test_lenient_wraps_bare_action_list() -> None:
    raw = json.dumps([{"action": "create", "file": "n.py", "content": "n = 1\n"}])
    payload = parse_patch_output(raw, SR, strict=False)
    assert payload.actions == (CreateAction("n.py", "n = 1\n"),)
    assert _codes(raw, FW, strict=False) == "wrong_type"


# ─────────────────────────────────────────────────────────────────────────────
# Quality gate
# ─────────────────────────────────────────────────────────────────────────────
def test_delete_requires_plan_intent() -> None:
    action = DeleteAction("src/legacy.py")
    keep = Plan(steps=("Refactor src/legacy.py for clarity",), target_files=("src/legacy.py",))
    drop = Plan(steps=("Delete the legacy module legacy.py; it is unused",))

    with pytest.raises(PatchQualityError) as ei:
        check_patch_quality([action], keep)
    assert ei.value.code == "disallowed_delete"
    check_patch_quality([action], drop)
    check_patch_quality([action], None, allow_delete=True)


def test_deletion_intent_needs_a_mention() -> None:
    plan = Plan(steps=("Remove dead code from utils.py",), target_files=("src/utils.py",))
    assert has_deletion_intent(plan, "src/utils.py")
    assert not has_deletion_intent(plan, "src/other.py")
    assert not has_deletion_intent(None, "src/utils.py")


def test_quality_gate_catches_placeholder_from_any_source() -> None:
    with pytest.raises(PatchQualityError):
        check_patch_quality([CreateAction("a.py", "   ")], None)
    with pytest.raises(PatchQualityError):
        check_patch_quality([ReplaceAction("a.py", "TODO", "x = 1")], None)


def test_plan_runs_quality_gate_during_parse() -> None:
    raw = json.dumps({"patches": [{"action": "delete", "file": "a.py"}]})
    assert _codes(raw, plan=Plan(steps=("tweak a.py",))) == "disallowed_delete"


# ─────────────────────────────────────────────────────────────────────────────
# Context requests
# ─────────────────────────────────────────────────────────────────────────────
def test_context_request_json_forms() -> None:
    req = parse_context_request('{"needs_context": true, "queries": ["db config"], "files": ["cfg.py", ""]}')
    assert req is not None and req.queries == ("db config",) and req.files == ("cfg.py",)
    assert req.reason == "needs_context"

    req = parse_context_request('```json\n{"type": "needs_context", "reason": "no schema"}\n```')
    assert req is not None and req.reason == "no schema"


def test_context_request_plain_text_and_negatives() -> None:
    assert parse_context_request("NEEDS_CONTEXT: show me the router").reason == "needs_context"
    assert parse_context_request(json.dumps({"patches": [REPLACE]})) is None
    assert parse_context_request('{"needs_context": false}') is None
    assert parse_context_request("") is None


@pytest.mark.parametrize(
    "search, replace",
    [
        ("...state,", "...state, loading: true,"),
        ("<title>", '<title lang="en">'),
        ("pass", "..."),
    ],
)
def test_code_that_resembles_placeholders_is_accepted(search: str, replace: str) -> None:
    raw = json.dumps({"patches": [{"action": "replace", "file": "src/a.py", "search_block": search, "replace_block": replace}]})
    payload = parse_patch_output(raw, SR)
    assert payload.actions[0].replace_block == replace


def test_creates_need_an_existing_known_or_planned_path() -> None:
    plan = Plan(steps=("add modules",), target_files=("src/a.py",), create_files=("src/new.py", "pkg/sub"))
    on_disk = {"src/a.py"}

    def check(path: str, **kw) -> None:
        check_create_targets([CreateAction(path, "X = 1\n")], plan, exists=on_disk.__contains__, **kw)

    check("src/a.py")
    check("./src/new.py")
    check("pkg/sub/deep/mod.py")
    check("docs/ctx.md", known=["docs/ctx.md"])
    check_create_targets([ReplaceAction("zzz.py", "a", "b"), DeleteAction("q.py")], None, exists=on_disk.__contains__)

    with pytest.raises(PatchQualityError) as ei:
        check("pkg/subway.py")
    assert ei.value.code == "unplanned_create"
    assert ei.value.category == "structural"
    with pytest.raises(PatchQualityError):
        check_create_targets([CreateAction("x.py", "X = 1\n")], None, exists=lambda p: False)
