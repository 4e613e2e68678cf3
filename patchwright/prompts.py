#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Prompt Builders & Output Grammars
===============================================================================

Purpose
-------
All text sent to models by the builder pipeline lives here:

  • builder system prompts per response mode (tool_calls / patch_json / freeform)
  • the schema‑only regeneration prompt used by the recovery ladder
  • the guard prompt listing disallowed and allowed paths
  • interpreter prompts (first pass + retry)
  • GBNF grammars, one per wire shape, for grammar‑constrained sampling
  • the user message carrying the plan and serialized context bundle

Design choices
--------------
• Output contracts are spelled out in full (schema example included) so a
  retry prompt can stand on its own without the original conversation.
• Every builder prompt tells the model how to ask for more context with the
  ``needs_context`` JSON object instead of guessing.
"""
from __future__ import annotations

import json
import textwrap
from typing import Optional, Sequence

from patchwright import get_logger
from patchwright.models import BuilderMode, ContextBundle, PatchFormat, Plan

log = get_logger(__name__)


# =============================================================================
# Shared fragments
# =============================================================================
NEEDS_CONTEXT_RULE = (
    '- If required context is missing, reply with JSON only: '
    '{"needs_context": true, "queries": ["..."], "files": ["..."], "reason": "..."}'
)

CONTEXT_NOTES = textwrap.dedent(
    """\
    CONTEXT NOTES:
    - Focus files carry full content; periphery files carry summaries/interfaces only.
    - Leave periphery files alone unless the plan names them.
    - Obey the WRITE POLICY of the context bundle. Never edit read-only paths.
    - Implement the requested change; do not weaken requirements or tests to get around it."""
)

SEARCH_REPLACE_SCHEMA = textwrap.dedent(
    """\
    PATCH SCHEMA:
    {
      "patches": [
        {"action": "replace", "file": "src/module.py", "search_block": "<exact existing text>", "replace_block": "<new text>"},
        {"action": "create", "file": "src/new_module.py", "content": "<complete file text>"},
        {"action": "delete", "file": "src/obsolete.py"}
      ]
    }"""
)

FILE_WRITES_SCHEMA = textwrap.dedent(
    """\
    PATCH SCHEMA:
    {
      "files": [
        {"path": "src/module.py", "content": "<complete file text>"}
      ]
    }"""
)


def schema_block(fmt: PatchFormat) -> str:
    return SEARCH_REPLACE_SCHEMA if fmt is PatchFormat.SEARCH_REPLACE else FILE_WRITES_SCHEMA


def _json_only_rules(fmt: PatchFormat) -> str:
    key = fmt.array_key
    return "\n".join(
        [
            "- Do NOT call tools.",
            "- Reply with one JSON object only: no prose, no markdown, no code fences.",
            "- The reply must start with '{' and end with '}'.",
            f'- The only top-level key is "{key}".',
            "- Do not echo the plan or the context bundle.",
            "- Never use placeholders such as '...', 'TODO' or '<content>' in place of real text.",
        ]
    )


# =============================================================================
# Builder prompts
# =============================================================================
BUILDER_TOOL_CALLS = "\n".join(
    [
        "ROLE: Builder",
        "TASK: Implement the plan by calling the workspace tools.",
        CONTEXT_NOTES,
        "CONSTRAINTS:",
        "- Make every file change through the write/replace/delete tools.",
        "- Read a file before replacing text in it; search blocks must match exactly once.",
        "- Follow the plan and do not invent files.",
        NEEDS_CONTEXT_RULE,
        "- When finished, reply with a short summary of what changed.",
    ]
)

BUILDER_FREEFORM = "\n".join(
    [
        "ROLE: Builder",
        "TASK: Implement the plan and describe the edits in plain text.",
        CONTEXT_NOTES,
        "CONSTRAINTS:",
        "- Do NOT call tools and do not answer with JSON or YAML.",
        "- For every change give the exact file path and either the full new file or the exact snippet to replace and its replacement.",
        "- Keep the summary short; code is what matters.",
        "- If required context is missing, say needs_context and explain what is missing.",
    ]
)


def build_builder_prompt(mode: BuilderMode, fmt: PatchFormat = PatchFormat.SEARCH_REPLACE) -> str:
    """System prompt for the builder in *mode* (and *fmt* when patch_json)."""
    if mode is BuilderMode.TOOL_CALLS:
        return BUILDER_TOOL_CALLS
    if mode is BuilderMode.FREEFORM:
        return BUILDER_FREEFORM
    task = (
        "Implement the plan by emitting one JSON patch payload."
        if fmt is PatchFormat.SEARCH_REPLACE
        else "Implement the plan by emitting one JSON payload of complete file writes."
    )
    prompt = "\n".join(
        [
            "ROLE: Builder",
            f"TASK: {task}",
            CONTEXT_NOTES,
            "CONSTRAINTS:",
            _json_only_rules(fmt),
            NEEDS_CONTEXT_RULE,
            schema_block(fmt),
        ]
    )
    log.debug("Builder prompt built | mode=%s | format=%s | chars=%d", mode.value, fmt.value, len(prompt))
    return prompt


def build_schema_retry_prompt(fmt: PatchFormat, error: Optional[str] = None, *, recovery: bool = False) -> str:
    """
    Schema‑only regeneration prompt. ``recovery`` marks the file‑writes turn
    that follows a search block mismatch.
    """
    lines = ["ROLE: Builder", "TASK: Re-emit the change as a payload that matches the schema exactly."]
    if recovery:
        lines.append(
            "A search block did not match the current file. Send the COMPLETE new content of every file you change."
        )
    if error:
        lines.append(f"PREVIOUS ATTEMPT REJECTED: {error}")
    lines.extend(["CONSTRAINTS:", _json_only_rules(fmt), NEEDS_CONTEXT_RULE, schema_block(fmt)])
    return "\n".join(lines)


def build_guard_prompt(
    fmt: PatchFormat,
    disallowed: Sequence[str],
    allowed: Sequence[str],
    read_only: Sequence[str] = (),
) -> str:
    """Final retry prompt after a payload referenced paths it may not touch."""
    lines = [
        "ROLE: Builder",
        "TASK: Re-emit the change touching ONLY allowed paths.",
        "WRITE GUARD:",
        f"- Disallowed paths you referenced: {', '.join(disallowed) or '<none>'}",
        f"- Read-only paths (never edit): {', '.join(read_only) or '<none>'}",
        f"- Allowed/preferred paths: {', '.join(allowed) or '<any path not read-only>'}",
        "CONSTRAINTS:",
        _json_only_rules(fmt),
        NEEDS_CONTEXT_RULE,
        schema_block(fmt),
    ]
    return "\n".join(lines)


# =============================================================================
# Interpreter prompts
# =============================================================================
def build_interpreter_prompt(fmt: PatchFormat) -> str:
    return "\n".join(
        [
            "ROLE: Patch Interpreter",
            "TASK: Convert the builder output below into a JSON patch payload.",
            "CONSTRAINTS:",
            "- Output JSON only: no prose, no markdown, no code fences.",
            "- Only use files and code that appear in the builder output.",
            "- No explanations.",
            schema_block(fmt),
        ]
    )


def build_interpreter_retry_prompt(fmt: PatchFormat, error: Optional[str] = None) -> str:
    lines = [
        "ROLE: Patch Interpreter",
        "TASK: Reply ONLY with valid JSON matching the patch schema.",
        "CONSTRAINTS:",
        "- Output JSON only: no prose, no markdown, no code fences.",
        "- The reply must start with '{'.",
    ]
    if error:
        lines.append(f"- Previous reply was rejected: {error}")
    lines.append(schema_block(fmt))
    return "\n".join(lines)


# =============================================================================
# User message
# =============================================================================
def build_user_message(plan: Plan, bundle: ContextBundle) -> str:
    """Plan as JSON followed by the serialized context bundle."""
    return "PLAN:\n" + json.dumps(plan.to_dict(), indent=2, ensure_ascii=False) + "\n\n" + bundle.render()


# =============================================================================
# Grammars (GBNF)
# =============================================================================
_GBNF_COMMON = r'''
string ::= "\"" char* "\""
char ::= [^"\\\x00-\x1f] | "\\" (["\\/bfnrt] | "u" hex hex hex hex)
hex ::= [0-9a-fA-F]
ws ::= [ \t\n\r]*
'''.strip()

SEARCH_REPLACE_GBNF = (
    r'''
root ::= ws "{" ws "\"patches\"" ws ":" ws "[" ws patch (ws "," ws patch)* ws "]" ws "}" ws
patch ::= replace | create | delete
replace ::= "{" ws "\"action\"" ws ":" ws "\"replace\"" ws "," ws "\"file\"" ws ":" ws string ws "," ws "\"search_block\"" ws ":" ws string ws "," ws "\"replace_block\"" ws ":" ws string ws "}"
create ::= "{" ws "\"action\"" ws ":" ws "\"create\"" ws "," ws "\"file\"" ws ":" ws string ws "," ws "\"content\"" ws ":" ws string ws "}"
delete ::= "{" ws "\"action\"" ws ":" ws "\"delete\"" ws "," ws "\"file\"" ws ":" ws string ws "}"
'''.strip()
    + "\n"
    + _GBNF_COMMON
)

FILE_WRITES_GBNF = (
    r'''
root ::= ws "{" ws "\"files\"" ws ":" ws "[" ws entry (ws "," ws entry)* ws "]" ws "}" ws
entry ::= "{" ws "\"path\"" ws ":" ws string ws "," ws "\"content\"" ws ":" ws string ws "}"
'''.strip()
    + "\n"
    + _GBNF_COMMON
)


def grammar_for(fmt: PatchFormat) -> str:
    return SEARCH_REPLACE_GBNF if fmt is PatchFormat.SEARCH_REPLACE else FILE_WRITES_GBNF


__all__ = [
    "build_builder_prompt",
    "build_schema_retry_prompt",
    "build_guard_prompt",
    "build_interpreter_prompt",
    "build_interpreter_retry_prompt",
    "build_user_message",
    "grammar_for",
    "schema_block",
    "SEARCH_REPLACE_GBNF",
    "FILE_WRITES_GBNF",
]
