#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Builder Runner (response‑mode state machine)
===============================================================================

Purpose
-------
Given a Plan and a Context Bundle, get the builder model to produce file
edits and apply them safely. Exactly one outcome per invocation: a
``ContextRequest`` (the model asked for more information) or an applied patch.
Anything else ends in ``BuilderFailure`` carrying the full attempt history.

States
------
tool_calls  (default) – tool loop; edits go through the workspace tools.
patch_json            – the model replies with one JSON payload.
freeform              – any reply goes straight to the interpreter.

    tool_calls ──(tools unsupported | no edits & no parseable patch)──► patch_json

Recovery ladder (patch_json)
----------------------------
    initial ──search block not found (search_replace)──► file_writes_recovery
       │
       ├─parse/quality error──► schema_retry (same format, once per format)
       │                            └─still failing & file_writes──► format_fallback
       ├─disallowed paths──► guard_retry (once, terminal)
       └─non‑JSON output that looks like a patch──► interpreter
    anything else / budgets spent ──► BuilderFailure

Budgets: format switch ≤ 1, schema retry ≤ 1 per format, guard ≤ 1,
interpreter ≤ 1. Every transition consumes budget, so the ladder cannot loop.

Invariants
----------
* A context request detected in any model reply ends the run immediately.
* Nothing is applied before the payload passed parsing, the quality gate and
  write authorization; a failed apply is rolled back before the ladder moves on.
* Tool edits are snapshotted at first touch and undone whenever a tool_calls
  turn ends without an applied result (runner failure or context request).
* Lane history receives only the user turn and the final resolved turn.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Set

from apply_patch import PatchApplier
from patchwright import get_logger
from patchwright.config import BuilderConfig
from patchwright.errors import (
    BuilderFailure,
    DisallowedPathError,
    PatchApplyError,
    PatchError,
    PatchParseError,
    ProviderError,
    RollbackError,
    RunnerError,
    ToolsUnsupportedError,
)
from patchwright.events import (
    CONTEXT_REQUEST,
    MODE_SWITCH,
    PATCH_APPLIED,
    PATCH_PARSE_FAILED,
    PATCH_RETRY,
    PATCH_ROLLBACK,
    RunLogger,
)
from patchwright.interpreter import PatchInterpreter, looks_interpretable
from patchwright.lanes import LaneHistory
from patchwright.models import (
    ApplyResult,
    AttemptRecord,
    BuilderMode,
    BuilderRunResult,
    ContextBundle,
    ContextRequest,
    PatchAction,
    PatchFormat,
    Plan,
    Usage,
)
from patchwright.output_parser import (
    check_create_targets,
    check_patch_quality,
    parse_context_request,
    parse_patch_output,
)
from patchwright.policy import WritePolicy
from patchwright.prompts import (
    build_builder_prompt,
    build_guard_prompt,
    build_schema_retry_prompt,
    build_user_message,
    grammar_for,
)
from patchwright.provider import Provider, ProviderMessage, ResponseFormat
from patchwright.runner import Runner
from patchwright.tools import ToolContext, ToolRegistry

log = get_logger(__name__)


class LadderStep(str, Enum):
    INITIAL = "initial"
    FILE_WRITES_RECOVERY = "file_writes_recovery"
    SCHEMA_RETRY = "schema_retry"
    FORMAT_FALLBACK = "format_fallback"
    GUARD_RETRY = "guard_retry"
    INTERPRETER = "interpreter"


@dataclass(frozen=True)
class Transition:
    """Next rung of the ladder."""

    step: LadderStep
    fmt: PatchFormat
    error: PatchError


@dataclass
class LadderBudget:
    schema_retried: Set[PatchFormat] = field(default_factory=set)
    format_switched: bool = False
    guard_used: bool = False
    interpreter_used: bool = False


@dataclass
class _Run:
    """Mutable state of one invocation."""

    plan: Plan
    bundle: ContextBundle
    policy: WritePolicy
    user_message: str
    history: List[ProviderMessage]
    deadline: Optional[float]
    cancel: Optional[threading.Event]
    usage: Usage = field(default_factory=Usage)
    attempts: List[AttemptRecord] = field(default_factory=list)
    budget: LadderBudget = field(default_factory=LadderBudget)
    tool_calls_executed: int = 0
    messages: List[ProviderMessage] = field(default_factory=list)

    def record(self, step: LadderStep, mode: BuilderMode, fmt: Optional[PatchFormat], exc: Optional[BaseException] = None) -> None:
        self.attempts.append(
            AttemptRecord(
                step=step.value,
                mode=mode.value,
                format=fmt.value if fmt else None,
                error=str(exc) if exc else None,
                category=getattr(exc, "category", None) if exc else None,
            )
        )


class BuilderRunner:
    """
    Orchestrates one builder invocation per ``run`` call.

    Parameters
    ----------
    provider : Provider
        Primary builder model.
    applier : PatchApplier
        Applies validated actions under the workspace root.
    config : BuilderConfig | None
        Limits, default mode/format, recovery policy.
    tools : ToolRegistry | None
        Tools offered in ``tool_calls`` mode (mode degrades to patch_json
        when None/empty).
    interpreter : PatchInterpreter | None
        Secondary pass; required for ``freeform`` and for the interpreter rung.
    lanes : LaneHistory | None
        Lane history store; used when ``run`` gets a ``lane_id``.
    events : RunLogger | None
        Phase event sink.
    """

    def __init__(
        self,
        provider: Provider,
        applier: PatchApplier,
        *,
        config: Optional[BuilderConfig] = None,
        tools: Optional[ToolRegistry] = None,
        interpreter: Optional[PatchInterpreter] = None,
        lanes: Optional[LaneHistory] = None,
        events: Optional[RunLogger] = None,
    ) -> None:
        self.provider = provider
        self.applier = applier
        self.config = config or BuilderConfig()
        self.tools = tools
        self.interpreter = interpreter
        self.lanes = lanes
        self.events = events or RunLogger()

    # ─────────────────────────────────────────────────────────────────────
    # Entry point
    # ─────────────────────────────────────────────────────────────────────
    def run(
        self,
        plan: Plan,
        bundle: ContextBundle,
        *,
        lane_id: Optional[str] = None,
        mode: Optional[BuilderMode] = None,
        patch_format: Optional[PatchFormat] = None,
        cancel: Optional[threading.Event] = None,
    ) -> BuilderRunResult:
        """
        Run the state machine once.

        Raises
        ------
        BuilderFailure
            Ladder exhausted, fatal apply/rollback error, provider failure or
            runner budget exceeded. ``exc.attempts`` lists every rung.
        """
        cfg = self.config
        mode = BuilderMode(mode or cfg.mode)
        fmt = PatchFormat(patch_format or cfg.patch_format)
        history = self.lanes.prepare(lane_id) if (self.lanes is not None and lane_id) else []
        st = _Run(
            plan=plan,
            bundle=bundle,
            policy=WritePolicy.for_run(plan, bundle),
            user_message=build_user_message(plan, bundle),
            history=history,
            deadline=(time.monotonic() + cfg.run_timeout_s) if cfg.run_timeout_s else None,
            cancel=cancel,
        )
        log.info("Builder run | mode=%s | format=%s | lane=%s | history=%d", mode.value, fmt.value, lane_id, len(history))

        if mode is BuilderMode.TOOL_CALLS and not self.tools:
            self.events.event(MODE_SWITCH, frm=mode.value, to=BuilderMode.PATCH_JSON.value, reason="no tools configured")
            mode = BuilderMode.PATCH_JSON

        try:
            if mode is BuilderMode.TOOL_CALLS:
                result = self._run_tool_calls(st, fmt)
            elif mode is BuilderMode.FREEFORM:
                result = self._run_freeform(st, fmt)
            else:
                result = self._run_ladder(st, fmt)
        except (RunnerError, ProviderError) as exc:
            log.error("Builder run aborted: %s", exc)
            st.record(LadderStep.INITIAL, mode, None, exc)
            raise BuilderFailure("Builder run aborted", st.attempts, cause=exc) from exc

        if self.lanes is not None and lane_id:
            self.lanes.append(
                lane_id,
                ProviderMessage("user", st.user_message),
                ProviderMessage("assistant", result.final_message),
            )
        return result

    # ─────────────────────────────────────────────────────────────────────
    # Shared helpers
    # ─────────────────────────────────────────────────────────────────────
    def _runner(self, st: _Run, **overrides) -> Runner:
        cfg = self.config
        params = dict(
            provider=self.provider,
            max_steps=cfg.max_steps,
            max_tool_calls=cfg.max_tool_calls,
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
            api_timeout_s=cfg.api_timeout_s,
            deadline=st.deadline,
            cancel=st.cancel,
            stream=cfg.stream,
        )
        params.update(overrides)
        return Runner(**params)

    def _grammar_enabled(self) -> bool:
        return self.config.grammar != "off" and bool(getattr(self.provider, "supports_grammar", False))

    def gate(self, st: _Run, actions: Sequence[PatchAction]) -> None:
        """Quality gate + write authorization (before every apply)."""
        check_patch_quality(actions, st.plan)
        st.policy.check(actions)
        check_create_targets(
            actions, st.plan, known=(f.path for f in st.bundle.files), exists=self.applier.exists
        )

    def _apply(self, st: _Run, actions: Sequence[PatchAction], *, source: str) -> ApplyResult:
        self.gate(st, actions)
        try:
            result = self.applier.apply_with_rollback(actions)
        except RollbackError as exc:
            self.events.event(PATCH_ROLLBACK, source=source, attempted=True, ok=False, error=str(exc))
            raise
        except PatchApplyError as exc:
            if exc.rollback is not None:
                rb = exc.rollback
                self.events.event(PATCH_ROLLBACK, source=source, attempted=rb.attempted, ok=rb.ok, error=str(exc))
            raise
        self.events.event(PATCH_APPLIED, source=source, touched=list(result.touched))
        return result

    def _context_result(
        self, st: _Run, request: ContextRequest, raw: str, mode: BuilderMode, fmt: Optional[PatchFormat]
    ) -> BuilderRunResult:
        self.events.event(CONTEXT_REQUEST, reason=request.reason, queries=list(request.queries), files=list(request.files))
        return BuilderRunResult(
            final_message=raw,
            mode=mode,
            patch_format=fmt,
            usage=st.usage,
            context_request=request,
            tool_calls_executed=st.tool_calls_executed,
            attempts=st.attempts,
            messages=st.messages,
        )

    def _done(self, st: _Run, raw: str, mode: BuilderMode, fmt: Optional[PatchFormat], result: ApplyResult) -> BuilderRunResult:
        return BuilderRunResult(
            final_message=raw,
            mode=mode,
            patch_format=fmt,
            usage=st.usage,
            apply_result=result,
            tool_calls_executed=st.tool_calls_executed,
            attempts=st.attempts,
            messages=st.messages,
        )

    def _fail(self, st: _Run, exc: BaseException) -> BuilderFailure:
        reason = "Rollback failed" if isinstance(exc, RollbackError) else f"Patch apply failed after {len(st.attempts)} attempt(s)"
        log.error("%s: %s", reason, exc)
        return BuilderFailure(reason, st.attempts, cause=exc)


    def _undo_tool_edits(self, st: _Run, ctx: ToolContext, cause: Optional[BaseException]) -> None:
        """Restore every path a tool touched in this run (no‑op when none did)."""
        plan = ctx.rollback_plan()
        if not plan.entries:
            return
        try:
            outcome = self.applier.rollback(plan, original=cause)
        except RollbackError as exc:
            self.events.event(PATCH_ROLLBACK, source="tool_calls", attempted=True, ok=False, error=str(exc))
            st.record(LadderStep.INITIAL, BuilderMode.TOOL_CALLS, None, exc)
            raise self._fail(st, exc) from exc
        ctx.snapshot.clear()
        ctx.touched.clear()
        self.events.event(
            PATCH_ROLLBACK, source="tool_calls", attempted=outcome.attempted, ok=outcome.ok, files=plan.files
        )
    # ─────────────────────────────────────────────────────────────────────
    # tool_calls
    # ─────────────────────────────────────────────────────────────────────
    def _run_tool_calls(self, st: _Run, fmt: PatchFormat) -> BuilderRunResult:
        ctx = ToolContext(applier=self.applier, gate=lambda actions: self.gate(st, actions), events=self.events)
        runner = self._runner(st, tools=self.tools, tool_context=ctx, tool_choice="auto")
        messages = [
            ProviderMessage("system", build_builder_prompt(BuilderMode.TOOL_CALLS)),
            *st.history,
            ProviderMessage("user", st.user_message),
        ]
        try:
            res = runner.run(messages)
        except ToolsUnsupportedError as exc:
            st.record(LadderStep.INITIAL, BuilderMode.TOOL_CALLS, None, exc)
            self._undo_tool_edits(st, ctx, exc)
            self.events.event(MODE_SWITCH, frm="tool_calls", to="patch_json", reason=str(exc))
            return self._run_ladder(st, fmt)
        except RollbackError as exc:
            st.record(LadderStep.INITIAL, BuilderMode.TOOL_CALLS, None, exc)
            self._undo_tool_edits(st, ctx, exc)
            raise self._fail(st, exc) from exc
        except (RunnerError, ProviderError) as exc:
            self._undo_tool_edits(st, ctx, exc)
            raise

        st.usage.add(res.usage)
        st.tool_calls_executed += res.tool_calls_executed
        st.messages = res.messages
        raw = res.final_message.content

        request = parse_context_request(raw)
        if request is not None:
            if ctx.touched:
                log.warning("Context requested after tool edits to %s; undoing them", ctx.touched)
                self._undo_tool_edits(st, ctx, None)
            return self._context_result(st, request, raw, BuilderMode.TOOL_CALLS, None)

        if ctx.touched:
            st.record(LadderStep.INITIAL, BuilderMode.TOOL_CALLS, None)
            return self._done(st, raw, BuilderMode.TOOL_CALLS, None, ApplyResult(touched=tuple(ctx.touched)))

        try:
            parse_patch_output(raw, fmt, strict=True)
        except PatchParseError as exc:
            st.record(LadderStep.INITIAL, BuilderMode.TOOL_CALLS, None, exc)
            self.events.event(
                MODE_SWITCH, frm="tool_calls", to="patch_json", reason="no tool edits and no parseable patch"
            )
            return self._run_ladder(st, fmt)
        # The tool turn already produced a payload; run it through the ladder as the first rung.
        return self._run_ladder(st, fmt, first_raw=raw, first_mode=BuilderMode.TOOL_CALLS)

    # ─────────────────────────────────────────────────────────────────────
    # freeform
    # ─────────────────────────────────────────────────────────────────────
    def _run_freeform(self, st: _Run, fmt: PatchFormat) -> BuilderRunResult:
        if self.interpreter is None:
            raise BuilderFailure("Freeform mode requires a patch interpreter", st.attempts)
        raw = self._ask(
            st,
            [
                ProviderMessage("system", build_builder_prompt(BuilderMode.FREEFORM)),
                *st.history,
                ProviderMessage("user", st.user_message),
            ],
            None,
        )
        request = parse_context_request(raw)
        if request is not None:
            return self._context_result(st, request, raw, BuilderMode.FREEFORM, None)
        try:
            payload = self.interpreter.interpret(raw, fmt)
            st.usage.add(self.interpreter.last_usage)
            result = self._apply(st, payload.actions, source="freeform")
        except PatchError as exc:
            st.usage.add(self.interpreter.last_usage)
            st.record(LadderStep.INTERPRETER, BuilderMode.FREEFORM, fmt, exc)
            raise self._fail(st, exc) from exc
        st.record(LadderStep.INTERPRETER, BuilderMode.FREEFORM, payload.format)
        return self._done(st, raw, BuilderMode.FREEFORM, payload.format, result)

    # ─────────────────────────────────────────────────────────────────────
    # patch_json + ladder
    # ─────────────────────────────────────────────────────────────────────
    def _ask(self, st: _Run, messages: List[ProviderMessage], response_format: Optional[ResponseFormat]) -> str:
        res = self._runner(st, max_steps=1, tool_choice="none", response_format=response_format).run(messages)
        st.usage.add(res.usage)
        st.messages = res.messages
        return res.final_message.content

    def _prompt_for(self, st: _Run, step: LadderStep, fmt: PatchFormat, error: Optional[PatchError]) -> List[ProviderMessage]:
        if step is LadderStep.INITIAL:
            system = build_builder_prompt(BuilderMode.PATCH_JSON, fmt)
            return [ProviderMessage("system", system), *st.history, ProviderMessage("user", st.user_message)]
        if step is LadderStep.GUARD_RETRY and isinstance(error, DisallowedPathError):
            system = build_guard_prompt(fmt, error.paths, st.policy.allowed, st.policy.read_only)
        else:
            system = build_schema_retry_prompt(
                fmt, str(error) if error else None, recovery=step is LadderStep.FILE_WRITES_RECOVERY
            )
        return [ProviderMessage("system", system), ProviderMessage("user", st.user_message)]

    def _format_for(self, step: LadderStep, fmt: PatchFormat) -> ResponseFormat:
        if step is not LadderStep.INITIAL and self._grammar_enabled():
            return ResponseFormat.gbnf(grammar_for(fmt))
        return ResponseFormat.json()

    def next_transition(
        self, st: _Run, step: LadderStep, fmt: PatchFormat, exc: PatchError, raw: str
    ) -> Optional[Transition]:
        """Pure ladder transition function; None means the ladder is exhausted."""
        b = st.budget
        if step in (LadderStep.GUARD_RETRY, LadderStep.INTERPRETER):
            return None
        if isinstance(exc, PatchApplyError):
            if fmt is PatchFormat.SEARCH_REPLACE and not b.format_switched and self.config.policy.wants_format_switch(exc):
                b.format_switched = True
                b.schema_retried.add(PatchFormat.FILE_WRITES)
                return Transition(LadderStep.FILE_WRITES_RECOVERY, PatchFormat.FILE_WRITES, exc)
            return None
        if isinstance(exc, DisallowedPathError):
            if not b.guard_used:
                b.guard_used = True
                return Transition(LadderStep.GUARD_RETRY, fmt, exc)
            return None
        if isinstance(exc, PatchParseError):
            if fmt not in b.schema_retried:
                b.schema_retried.add(fmt)
                return Transition(LadderStep.SCHEMA_RETRY, fmt, exc)
            if fmt is PatchFormat.FILE_WRITES and not b.format_switched:
                b.format_switched = True
                b.schema_retried.add(PatchFormat.SEARCH_REPLACE)
                return Transition(LadderStep.FORMAT_FALLBACK, PatchFormat.SEARCH_REPLACE, exc)
            if (
                exc.interpreter_eligible
                and self.interpreter is not None
                and not b.interpreter_used
                and looks_interpretable(raw, st.plan)
            ):
                b.interpreter_used = True
                return Transition(LadderStep.INTERPRETER, fmt, exc)
        return None

    def _run_ladder(
        self,
        st: _Run,
        fmt: PatchFormat,
        *,
        first_raw: Optional[str] = None,
        first_mode: BuilderMode = BuilderMode.PATCH_JSON,
    ) -> BuilderRunResult:
        step = LadderStep.INITIAL
        error: Optional[PatchError] = None
        raw = ""
        mode = first_mode

        while True:
            if step is LadderStep.INTERPRETER:
                if self.interpreter is None:
                    raise RuntimeError("Interpreter rung reached without an interpreter")
                try:
                    payload = self.interpreter.interpret(raw, fmt)
                    st.usage.add(self.interpreter.last_usage)
                    result = self._apply(st, payload.actions, source=step.value)
                except PatchError as exc:
                    st.usage.add(self.interpreter.last_usage)
                    st.record(step, mode, fmt, exc)
                    raise self._fail(st, exc) from exc
                st.record(step, mode, payload.format)
                return self._done(st, raw, mode, payload.format, result)

            if first_raw is not None:
                raw, first_raw = first_raw, None
            else:
                raw = self._ask(st, self._prompt_for(st, step, fmt, error), self._format_for(step, fmt))

            request = parse_context_request(raw)
            if request is not None:
                return self._context_result(st, request, raw, mode, fmt)

            try:
                payload = parse_patch_output(raw, fmt, strict=True)
                result = self._apply(st, payload.actions, source=step.value)
            except RollbackError as exc:
                st.record(step, mode, fmt, exc)
                raise self._fail(st, exc) from exc
            except (PatchParseError, DisallowedPathError, PatchApplyError) as exc:
                st.record(step, mode, fmt, exc)
                if isinstance(exc, PatchParseError):
                    self.events.event(PATCH_PARSE_FAILED, step=step.value, format=fmt.value, code=exc.code, error=str(exc))
                nxt = self.next_transition(st, step, fmt, exc, raw)
                if nxt is None:
                    raise self._fail(st, exc) from exc
                self.events.event(
                    PATCH_RETRY, frm=step.value, to=nxt.step.value, format=nxt.fmt.value, reason=str(exc)
                )
                step, fmt, error = nxt.step, nxt.fmt, nxt.error
                mode = BuilderMode.PATCH_JSON
                continue

            st.record(step, mode, fmt)
            return self._done(st, raw, mode, fmt, result)


__all__ = ["BuilderRunner", "LadderStep", "LadderBudget", "Transition"]
