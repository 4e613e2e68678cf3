#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Best‑effort extraction of a JSON object from model output.

Two entry points:

* ``extract_json_candidate(text)`` – fenced block first, then the first
  balanced ``{...}`` / ``[...]`` span. Returns the candidate *text* or None.
* ``normalize_patch_output(text)`` – strips fences and a ``json:`` prefix, then
  tries a direct parse, a balanced scan and finally shrinks from the end.
  Returns the decoded object or None.

Neither function validates the payload shape; that is the parser's job.
"""
from __future__ import annotations

import json
import re
from typing import Any, Optional

from patchwright import get_logger

log = get_logger(__name__)

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_+-]*)[ \t]*\r?\n(.*?)```", re.DOTALL)
_WHOLE_FENCE_RE = re.compile(r"^\s*```[ \t]*[A-Za-z0-9_+-]*[ \t]*\r?\n(.*?)\r?\n?```\s*$", re.DOTALL)
_JSON_PREFIX_RE = re.compile(r"^\s*json\s*:\s*", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """If *text* is exactly one fenced block, return its body; else *text* unchanged."""
    m = _WHOLE_FENCE_RE.match(text or "")
    return m.group(1) if m else (text or "")


def fenced_blocks(text: str) -> list[str]:
    """All fenced block bodies in order; blocks tagged json come first."""
    blocks = [(lang.lower(), body) for lang, body in _FENCE_RE.findall(text or "")]
    tagged = [b for lang, b in blocks if lang == "json"]
    others = [b for lang, b in blocks if lang != "json"]
    return tagged + others


def balanced_span(text: str, start: int = 0) -> Optional[str]:
    """
    Return the first balanced ``{...}`` or ``[...]`` span at or after *start*,
    honouring JSON string escapes. None when nothing balances.
    """
    openers = {"{": "}", "[": "]"}
    i = start
    n = len(text)
    while i < n:
        if text[i] in openers:
            stack = [openers[text[i]]]
            in_str = False
            esc = False
            for j in range(i + 1, n):
                ch = text[j]
                if in_str:
                    if esc:
                        esc = False
                    elif ch == "\\":
                        esc = True
                    elif ch == '"':
                        in_str = False
                    continue
                if ch == '"':
                    in_str = True
                elif ch in openers:
                    stack.append(openers[ch])
                elif stack and ch == stack[-1]:
                    stack.pop()
                    if not stack:
                        return text[i : j + 1]
                elif ch in "]}":
                    break
        i += 1
    return None


def extract_json_candidate(text: str) -> Optional[str]:
    """Return the most plausible JSON text inside *text* (fenced block first)."""
    for block in fenced_blocks(text):
        span = balanced_span(block)
        if span:
            return span
    return balanced_span(text or "")


def _try_loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def normalize_patch_output(text: str) -> Any:
    """
    Decode the JSON payload hidden in *text*.

    Returns
    -------
    Any | None
        Decoded object/array, or None when no JSON could be recovered.
    """
    body = _JSON_PREFIX_RE.sub("", strip_code_fences(text or "").strip(), count=1).strip()
    if not body:
        return None

    direct = _try_loads(body)
    if direct is not None:
        return direct

    candidate = extract_json_candidate(body)
    if candidate:
        decoded = _try_loads(candidate)
        if decoded is not None:
            return decoded

    # Last resort: first '{' to each '}' from the end, shrinking.
    first = body.find("{")
    end = body.rfind("}")
    while first != -1 and end > first:
        decoded = _try_loads(body[first : end + 1])
        if decoded is not None:
            return decoded
        end = body.rfind("}", first, end)
    log.debug("No JSON recovered from output (%d chars)", len(body))
    return None


__all__ = [
    "strip_code_fences",
    "fenced_blocks",
    "balanced_span",
    "extract_json_candidate",
    "normalize_patch_output",
]
