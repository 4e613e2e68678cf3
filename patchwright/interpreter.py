#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Patch Interpreter (secondary model pass)
===============================================================================

Purpose
-------
Recover a valid payload from builder output that does not follow the wire
contract (prose, loose JSON, freeform snippets) via an independent model call.

Flow
----
1) Fast path: normalize the raw text locally and parse it leniently. A usable
   payload returns without spending a model call.
2) Ask the provider, with the interpreter prompt as system message and the raw
   output as user message (strict JSON response format).
3) If that reply does not parse, retry up to ``max_retries`` times with the
   stricter retry prompt.

Eligibility
-----------
``looks_interpretable(raw, plan)`` is the gate the builder uses before calling
the interpreter: the text must contain something JSON‑like, or prose naming an
edit verb together with a path the plan targets or may create. Empty output,
pure placeholders and schema‑level failures are never sent here.
"""
from __future__ import annotations

import re
from typing import Optional

from patch_validator import is_placeholder_text, normalize_rel_path
from patchwright import get_logger
from patchwright.errors import PatchParseError
from patchwright.events import (
    INTERPRETER_REQUEST,
    INTERPRETER_RESPONSE,
    INTERPRETER_RETRY,
    RunLogger,
)
from patchwright.models import PatchFormat, PatchPayload, Plan, Usage
from patchwright.normalizer import extract_json_candidate
from patchwright.output_parser import parse_patch_output
from patchwright.prompts import build_interpreter_prompt, build_interpreter_retry_prompt
from patchwright.provider import Provider, ProviderMessage, ProviderRequest, ResponseFormat

log = get_logger(__name__)

_ACTION_VERB_RE = re.compile(
    r"\b(?:add|adds|added|update|updates|updated|modify|modified|change|changed|replace|replaced|"
    r"create|created|write|wrote|edit|edited|insert|inserted|delete|deleted|remove|removed|rename|fix|fixed)\b",
    re.IGNORECASE,
)


def looks_interpretable(raw: str, plan: Optional[Plan] = None) -> bool:
    """
    True when *raw* plausibly carries patch intent.

    Either a JSON‑looking span exists, or the prose has an edit verb **and**
    mentions a path from the plan's target/create lists.
    """
    if is_placeholder_text(raw or ""):
        return False
    if extract_json_candidate(raw):
        return True
    if plan is None or not _ACTION_VERB_RE.search(raw):
        return False
    for path in (*plan.target_files, *plan.create_files):
        norm = normalize_rel_path(path)
        if norm and norm in raw:
            return True
    return False


class PatchInterpreter:
    """
    Convert non‑conforming builder output into a ``PatchPayload``.

    Parameters
    ----------
    provider : Provider
        Model used for interpretation (may differ from the builder's).
    patch_format : PatchFormat
        Default format when ``interpret`` gets no override.
    max_retries : int
        Extra provider attempts after the first failed interpretation.
    """

    def __init__(
        self,
        provider: Provider,
        patch_format: PatchFormat = PatchFormat.SEARCH_REPLACE,
        *,
        response_format: Optional[ResponseFormat] = None,
        temperature: Optional[float] = 0.0,
        max_tokens: Optional[int] = None,
        timeout_s: Optional[float] = None,
        max_retries: int = 1,
        events: Optional[RunLogger] = None,
    ) -> None:
        self.provider = provider
        self.patch_format = PatchFormat(patch_format)
        self.response_format = response_format or ResponseFormat.json()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_s = timeout_s
        self.max_retries = max(0, int(max_retries))
        self.events = events or RunLogger()
        self.last_usage = Usage()

    def _request(self, prompt: str, raw: str, *, retry: bool, fmt: PatchFormat) -> str:
        self.events.event(INTERPRETER_REQUEST, retry=retry, patch_format=fmt.value, provider=self.provider.name)
        response = self.provider.generate(
            ProviderRequest(
                messages=[ProviderMessage("system", prompt), ProviderMessage("user", raw)],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                response_format=self.response_format,
                timeout_s=self.timeout_s,
            )
        )
        self.last_usage.add(response.usage)
        content = response.message.content or ""
        self.events.event(INTERPRETER_RESPONSE, retry=retry, length=len(content), patch_format=fmt.value)
        return content

    def interpret(self, raw: str, fmt: Optional[PatchFormat] = None) -> PatchPayload:
        """
        Return a payload derived from *raw*.

        Raises
        ------
        PatchParseError
            When neither the fast path nor any provider attempt yields a
            valid payload (the last parse error is raised).
        """
        fmt = PatchFormat(fmt or self.patch_format)
        self.last_usage = Usage()
        try:
            payload = parse_patch_output(raw, fmt, strict=False)
            log.info("Interpreter fast path parsed %d action(s)", len(payload.actions))
            return payload
        except PatchParseError as exc:
            log.debug("Interpreter fast path failed: %s", exc)

        content = self._request(build_interpreter_prompt(fmt), raw, retry=False, fmt=fmt)
        try:
            return parse_patch_output(content, fmt, strict=False)
        except PatchParseError as exc:
            last_error = exc

        for attempt in range(1, self.max_retries + 1):
            self.events.event(INTERPRETER_RETRY, attempt=attempt, error=str(last_error))
            content = self._request(build_interpreter_retry_prompt(fmt, str(last_error)), raw, retry=True, fmt=fmt)
            try:
                return parse_patch_output(content, fmt, strict=False)
            except PatchParseError as exc:
                last_error = exc
        raise last_error


__all__ = ["PatchInterpreter", "looks_interpretable"]
