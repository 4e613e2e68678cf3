#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Tool‑Calling Loop
===============================================================================

Purpose
-------
Drive one model conversation until the assistant answers without tool calls:

    loop (≤ max_steps):
        provider.generate(messages, tools)
        no tool calls → done
        else execute each call (≤ max_tool_calls total), append tool results

Budgets & cancellation
----------------------
* ``deadline`` (``time.monotonic()`` based) bounds the whole loop; the time
  left is passed to each provider call as its timeout so an in‑flight request
  cannot outlive the budget by more than the SDK's own granularity.
* ``cancel`` (``threading.Event``) lets a caller stop the lane between steps.
* Violations raise ``RunnerTimeoutError`` / ``RunCancelledError`` /
  ``StepLimitExceeded`` / ``ToolCallLimitExceeded``. The loop holds no
  filesystem state of its own, so aborting never leaves a half‑applied patch.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from patchwright import get_logger
from patchwright.errors import (
    RunCancelledError,
    RunnerTimeoutError,
    StepLimitExceeded,
    ToolCallLimitExceeded,
)
from patchwright.models import Usage
from patchwright.provider import (
    Provider,
    ProviderMessage,
    ProviderRequest,
    ResponseFormat,
    ToolChoice,
)
from patchwright.tools import ToolContext, ToolRegistry

log = get_logger(__name__)


@dataclass
class RunnerResult:
    final_message: ProviderMessage
    messages: List[ProviderMessage]
    tool_calls_executed: int = 0
    usage: Usage = field(default_factory=Usage)


@dataclass
class Runner:
    """
    Bounded provider/tool loop. One instance per conversation; ``run`` may be
    called repeatedly (each call has its own step/tool budgets, the deadline
    is shared).
    """

    provider: Provider
    tools: Optional[ToolRegistry] = None
    tool_context: Optional[ToolContext] = None
    max_steps: int = 8
    max_tool_calls: int = 24
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    response_format: Optional[ResponseFormat] = None
    tool_choice: Optional[ToolChoice] = None
    api_timeout_s: Optional[float] = None
    deadline: Optional[float] = None
    cancel: Optional[threading.Event] = None
    stream: bool = False
    on_token: Optional[Callable[[str], None]] = None

    def _check_budget(self) -> Optional[float]:
        """Raise when cancelled/expired; return seconds left (None = unbounded)."""
        if self.cancel is not None and self.cancel.is_set():
            raise RunCancelledError("Runner cancelled by caller")
        if self.deadline is None:
            return self.api_timeout_s
        left = self.deadline - time.monotonic()
        if left <= 0:
            raise RunnerTimeoutError("Runner timeout exceeded")
        return min(left, self.api_timeout_s) if self.api_timeout_s else left

    def run(self, messages: List[ProviderMessage]) -> RunnerResult:
        history = list(messages)
        usage = Usage()
        executed = 0
        use_tools = bool(self.tools) and self.tool_choice != "none"

        for step in range(1, self.max_steps + 1):
            timeout = self._check_budget()
            response = self.provider.generate(
                ProviderRequest(
                    messages=list(history),
                    tools=self.tools.describe() if use_tools and self.tools is not None else None,
                    tool_choice=self.tool_choice if use_tools else None,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    response_format=self.response_format,
                    stream=self.stream,
                    timeout_s=timeout,
                    on_token=self.on_token,
                )
            )
            usage.add(response.usage)
            calls = response.tool_calls or response.message.tool_calls
            assistant = ProviderMessage("assistant", response.message.content or "", tool_calls=list(calls))
            history.append(assistant)
            log.debug("Runner step %d | tool_calls=%d | chars=%d", step, len(calls), len(assistant.content))

            if not calls or not use_tools or self.tools is None:
                return RunnerResult(assistant, history, executed, usage)

            context = self.tool_context
            if context is None:
                raise RuntimeError("Tool calls received but no ToolContext was configured")
            for call in calls:
                self._check_budget()
                if executed >= self.max_tool_calls:
                    raise ToolCallLimitExceeded("Tool call limit exceeded")
                result = self.tools.execute(call.name, call.arguments, context)
                executed += 1
                log.info("Tool %s → %s", call.name, "ok" if result.ok else result.error)
                history.append(
                    ProviderMessage("tool", result.as_message(), name=call.name, tool_call_id=call.id)
                )

        raise StepLimitExceeded("Runner step limit exceeded")


__all__ = ["Runner", "RunnerResult"]
