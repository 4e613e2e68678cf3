"""
Configuration, recovery policy, run events and result records.
"""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from patchwright.config import BuilderConfig, RecoveryPolicy
from patchwright.errors import (
    BuilderFailure,
    PatchApplyError,
    PatchParseError,
    SearchBlockNotFoundError,
)
from patchwright.events import PATCH_APPLIED, RunLogger
from patchwright.models import (
    ApplyResult,
    AttemptRecord,
    BuilderMode,
    BuilderRunResult,
    ContextBundle,
    PatchFormat,
    Plan,
)


def test_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PATCHWRIGHT_MODE", "patch_json")
    monkeypatch.setenv("PATCHWRIGHT_PATCH_FORMAT", "file_writes")
    monkeypatch.setenv("PATCHWRIGHT_MAX_STEPS", "3")
    monkeypatch.setenv("PATCHWRIGHT_MAX_TOKENS", "not-a-number")
    monkeypatch.setenv("PATCHWRIGHT_GRAMMAR", " OFF ")
    cfg = BuilderConfig.from_env()
    assert cfg.mode is BuilderMode.PATCH_JSON
    assert cfg.patch_format is PatchFormat.FILE_WRITES
    assert cfg.max_steps == 3
    assert cfg.max_tokens is None
    assert cfg.grammar == "off"


def test_recovery_policy_by_type_and_marker() -> None:
    policy = RecoveryPolicy()
    assert policy.wants_format_switch(SearchBlockNotFoundError("Search block not found in a.py."))
    assert not policy.wants_format_switch(PatchApplyError("Permission denied"))
    assert not policy.wants_format_switch(PatchParseError("invalid_json", "search block not found"))

    by_marker = RecoveryPolicy(format_switch_errors=(), format_switch_markers=("no match for hunk",))
    assert by_marker.wants_format_switch(PatchApplyError("No match for hunk #2 in a.py"))
    assert not by_marker.wants_format_switch(SearchBlockNotFoundError("Search block not found in a.py."))


def test_run_logger_appends_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "runs" / "events.jsonl"
    events = RunLogger(path, lane_id="j:t:builder")
    events.event(PATCH_APPLIED, touched=["a.py"])
    events.event("patch_retry", frm="initial", to="schema_retry")

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [rec["event"] for rec in lines] == [PATCH_APPLIED, "patch_retry"]
    assert lines[0]["lane"] == "j:t:builder" and lines[0]["data"] == {"touched": ["a.py"]}
    assert events.names() == [PATCH_APPLIED, "patch_retry"]


def test_builder_failure_carries_history() -> None:
    attempts = [
        AttemptRecord("initial", "patch_json", "search_replace", "Patch output is not valid JSON", "nonconforming"),
        AttemptRecord("schema_retry", "patch_json", "search_replace", "Patch payload must include patches array", "schema"),
    ]
    cause = PatchParseError("missing_array", "Patch payload must include patches array")
    exc = BuilderFailure("Patch apply failed after 2 attempt(s)", attempts, cause=cause)
    assert str(exc) == (
        "Patch apply failed after 2 attempt(s): "
        "[initial patch_json/search_replace] Patch output is not valid JSON | "
        "[schema_retry patch_json/search_replace] Patch payload must include patches array"
    )
    assert exc.category == "schema"
    assert exc.rollback is None


def test_result_record_serialises() -> None:
    result = BuilderRunResult(
        final_message="done",
        mode=BuilderMode.TOOL_CALLS,
        apply_result=ApplyResult(touched=("a.py",)),
        attempts=[AttemptRecord("initial", "tool_calls", None)],
    )
    data = json.loads(result.to_json())
    assert data["mode"] == "tool_calls" and data["patch_format"] is None
    assert data["touched"] == ["a.py"] and data["context_request"] is None
    assert data["attempts"][0]["step"] == "initial"


def test_plan_and_bundle_from_dict() -> None:
    plan = Plan.from_dict({"steps": ["a", "", 3], "target_files": ["x.py"], "risk_assessment": None})
    assert plan.steps == ("a",) and plan.target_files == ("x.py",) and plan.risk_assessment == ""

    bundle = ContextBundle.from_dict(
        {
            "request": "fix",
            "files": [{"path": "x.py", "role": "focus", "content": "X"}, {"nope": 1}],
            "read_only_paths": ["vendor"],
        }
    )
    text = bundle.render()
    assert "FILE (focus): x.py" in text and "read-only: vendor" in text
    assert ContextBundle.from_dict({"serialized": {"content": "PRE-RENDERED"}}).render() == "PRE-RENDERED"
