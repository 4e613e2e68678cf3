#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Configuration
===============================================================================

Environment‑backed defaults (read once at import) plus two dataclasses:

* ``BuilderConfig``  – runner limits / mode / format; ``BuilderConfig.from_env()``
* ``RecoveryPolicy`` – decides which apply‑time errors are worth a patch‑format
  switch instead of a fatal stop.

Environment
-----------
PATCHWRIGHT_MODEL                 – model id (default: gpt-4o-mini)
PATCHWRIGHT_API_TIMEOUT           – per-request timeout in seconds (default: 120)
PATCHWRIGHT_RUN_TIMEOUT           – whole builder run budget in seconds (default: 600)
PATCHWRIGHT_MAX_STEPS             – tool loop turns (default: 8)
PATCHWRIGHT_MAX_TOOL_CALLS        – tool executions per run (default: 24)
PATCHWRIGHT_MAX_TOKENS            – completion token cap (default: unset)
PATCHWRIGHT_TEMPERATURE           – sampling temperature (default: 0)
PATCHWRIGHT_MODE                  – tool_calls | patch_json | freeform
PATCHWRIGHT_PATCH_FORMAT          – search_replace | file_writes
PATCHWRIGHT_GRAMMAR               – auto | on | off
PATCHWRIGHT_LANES_DIR             – JSONL lane history directory (default: in-memory)
PATCHWRIGHT_HISTORY_MESSAGES      – lane messages replayed per run (default: 12)
PATCHWRIGHT_INTERPRETER_RETRIES   – interpreter retries (default: 1)
PATCHWRIGHT_RUN_LOG               – JSONL file receiving builder phase events
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple, Type

from patchwright.errors import PatchApplyError, SearchBlockNotFoundError
from patchwright.models import BuilderMode, PatchFormat


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


DEFAULT_MODEL = os.getenv("PATCHWRIGHT_MODEL", "gpt-4o-mini")
DEFAULT_API_TIMEOUT = _env_int("PATCHWRIGHT_API_TIMEOUT", 120)
DEFAULT_RUN_TIMEOUT = _env_int("PATCHWRIGHT_RUN_TIMEOUT", 600)
DEFAULT_MAX_STEPS = _env_int("PATCHWRIGHT_MAX_STEPS", 8)
DEFAULT_MAX_TOOL_CALLS = _env_int("PATCHWRIGHT_MAX_TOOL_CALLS", 24)
DEFAULT_HISTORY_MESSAGES = _env_int("PATCHWRIGHT_HISTORY_MESSAGES", 12)
DEFAULT_INTERPRETER_RETRIES = _env_int("PATCHWRIGHT_INTERPRETER_RETRIES", 1)
DEFAULT_MODE = os.getenv("PATCHWRIGHT_MODE", BuilderMode.TOOL_CALLS.value)
DEFAULT_PATCH_FORMAT = os.getenv("PATCHWRIGHT_PATCH_FORMAT", PatchFormat.SEARCH_REPLACE.value)
DEFAULT_GRAMMAR = (os.getenv("PATCHWRIGHT_GRAMMAR") or "auto").strip().lower()
LANES_DIR = os.getenv("PATCHWRIGHT_LANES_DIR") or None
RUN_LOG = os.getenv("PATCHWRIGHT_RUN_LOG") or None


@dataclass(frozen=True)
class RecoveryPolicy:
    """
    Classification of apply‑time failures.

    An apply error triggers the file‑writes recovery turn when it is an
    instance of one of ``format_switch_errors`` **or** its message contains one
    of ``format_switch_markers`` (case‑insensitive). Everything else that the
    applier raises is fatal.
    """

    format_switch_errors: Tuple[Type[BaseException], ...] = (SearchBlockNotFoundError,)
    format_switch_markers: Tuple[str, ...] = ("search block not found",)

    def wants_format_switch(self, exc: BaseException) -> bool:
        if not isinstance(exc, PatchApplyError):
            return False
        if isinstance(exc, self.format_switch_errors):
            return True
        text = str(exc).lower()
        return any(marker.lower() in text for marker in self.format_switch_markers)


@dataclass
class BuilderConfig:
    """Limits and defaults for one ``BuilderRunner``."""

    model: str = DEFAULT_MODEL
    mode: BuilderMode = BuilderMode(DEFAULT_MODE)
    patch_format: PatchFormat = PatchFormat(DEFAULT_PATCH_FORMAT)
    max_steps: int = DEFAULT_MAX_STEPS
    max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS
    max_tokens: Optional[int] = None
    temperature: Optional[float] = 0.0
    api_timeout_s: float = DEFAULT_API_TIMEOUT
    run_timeout_s: Optional[float] = DEFAULT_RUN_TIMEOUT
    grammar: str = DEFAULT_GRAMMAR  # auto | on | off
    history_messages: int = DEFAULT_HISTORY_MESSAGES
    interpreter_retries: int = DEFAULT_INTERPRETER_RETRIES
    stream: bool = False
    policy: RecoveryPolicy = field(default_factory=RecoveryPolicy)

    @classmethod
    def from_env(cls) -> "BuilderConfig":
        """Re‑read the environment (module defaults are frozen at import)."""
        max_tokens = _env_int("PATCHWRIGHT_MAX_TOKENS", 0)
        return cls(
            model=os.getenv("PATCHWRIGHT_MODEL", DEFAULT_MODEL),
            mode=BuilderMode(os.getenv("PATCHWRIGHT_MODE", DEFAULT_MODE)),
            patch_format=PatchFormat(os.getenv("PATCHWRIGHT_PATCH_FORMAT", DEFAULT_PATCH_FORMAT)),
            max_steps=_env_int("PATCHWRIGHT_MAX_STEPS", DEFAULT_MAX_STEPS),
            max_tool_calls=_env_int("PATCHWRIGHT_MAX_TOOL_CALLS", DEFAULT_MAX_TOOL_CALLS),
            max_tokens=max_tokens or None,
            temperature=_env_float("PATCHWRIGHT_TEMPERATURE", 0.0),
            api_timeout_s=_env_int("PATCHWRIGHT_API_TIMEOUT", DEFAULT_API_TIMEOUT),
            run_timeout_s=_env_int("PATCHWRIGHT_RUN_TIMEOUT", DEFAULT_RUN_TIMEOUT) or None,
            grammar=(os.getenv("PATCHWRIGHT_GRAMMAR") or DEFAULT_GRAMMAR).strip().lower(),
            history_messages=_env_int("PATCHWRIGHT_HISTORY_MESSAGES", DEFAULT_HISTORY_MESSAGES),
            interpreter_retries=_env_int("PATCHWRIGHT_INTERPRETER_RETRIES", DEFAULT_INTERPRETER_RETRIES),
        )


__all__ = [
    "DEFAULT_MODEL",
    "DEFAULT_API_TIMEOUT",
    "DEFAULT_RUN_TIMEOUT",
    "DEFAULT_MAX_STEPS",
    "DEFAULT_MAX_TOOL_CALLS",
    "DEFAULT_HISTORY_MESSAGES",
    "DEFAULT_INTERPRETER_RETRIES",
    "DEFAULT_MODE",
    "DEFAULT_PATCH_FORMAT",
    "LANES_DIR",
    "RUN_LOG",
    "RecoveryPolicy",
    "BuilderConfig",
]
