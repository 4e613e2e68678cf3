#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Error Taxonomy
===============================================================================

Every failure the builder can recover from (or must give up on) is a typed
exception carrying a ``category``. The builder's ladder dispatches on the
category, never on message wording.

Categories
----------
schema        – top-level array key missing/mistyped, empty or unknown keys
structural    – entry not an object, bad action, placeholder text, bad delete,
                unplanned create
nonconforming – not JSON at all / prose mixed with JSON
authorization – disallowed or placeholder paths
apply         – filesystem/apply-time failure
rollback      – restoring the snapshot failed (always fatal)
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

from patchwright.models import AttemptRecord, RollbackOutcome

SCHEMA = "schema"
STRUCTURAL = "structural"
NONCONFORMING = "nonconforming"
AUTHORIZATION = "authorization"
APPLY = "apply"
ROLLBACK = "rollback"


class PatchError(Exception):
    """Base class for every patch pipeline error."""

    category: str = APPLY


# ─────────────────────────────────────────────────────────────────────────────
# Parse / validation
# ─────────────────────────────────────────────────────────────────────────────
class PatchParseError(PatchError, ValueError):
    """
    Raw model output could not be turned into a valid payload.

    Attributes
    ----------
    code : str
        Machine-readable reason (``missing_array``, ``placeholder`` …).
    """

    SCHEMA_CODES = frozenset({"missing_array", "wrong_type", "empty_array", "unexpected_keys", "empty_output"})
    STRUCTURAL_CODES = frozenset(
        {"entry_not_object", "invalid_action", "invalid_field", "placeholder", "disallowed_delete", "unplanned_create"}
    )
    NONCONFORMING_CODES = frozenset({"invalid_json", "mixed_content"})

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code

    @property
    def category(self) -> str:  # type: ignore[override]
        if self.code in self.SCHEMA_CODES:
            return SCHEMA
        if self.code in self.NONCONFORMING_CODES:
            return NONCONFORMING
        return STRUCTURAL

    @property
    def schema_level(self) -> bool:
        return self.code in self.SCHEMA_CODES

    @property
    def interpreter_eligible(self) -> bool:
        """Only non-JSON / prose-mixed output may go to the interpreter."""
        return self.code in self.NONCONFORMING_CODES


class PatchQualityError(PatchParseError):
    """Quality gate rejection of an otherwise well-formed payload."""


# ─────────────────────────────────────────────────────────────────────────────
# Authorization
# ─────────────────────────────────────────────────────────────────────────────
class DisallowedPathError(PatchError):
    """The payload targets read-only, out-of-plan or placeholder paths."""

    category = AUTHORIZATION

    def __init__(self, paths: Sequence[str], allowed: Sequence[str] = (), read_only: Sequence[str] = ()) -> None:
        self.paths: Tuple[str, ...] = tuple(paths)
        self.allowed: Tuple[str, ...] = tuple(allowed)
        self.read_only: Tuple[str, ...] = tuple(read_only)
        super().__init__(f"Patch references disallowed files: {', '.join(self.paths)}")


# ─────────────────────────────────────────────────────────────────────────────
# Apply / rollback
# ─────────────────────────────────────────────────────────────────────────────
class PatchApplyError(PatchError, RuntimeError):
    """An action failed while touching the filesystem."""

    category = APPLY

    def __init__(self, message: str, *, file: Optional[str] = None) -> None:
        super().__init__(message)
        self.file = file
        self.rollback: Optional[RollbackOutcome] = None


class SearchBlockNotFoundError(PatchApplyError):
    pass


class AmbiguousSearchBlockError(PatchApplyError):
    pass


class PathOutsideWorkspaceError(PatchApplyError):
    pass


class RollbackError(PatchError, RuntimeError):
    """Restoring the pre-apply snapshot failed. Carries both errors."""

    category = ROLLBACK

    def __init__(self, original: BaseException, failures: Sequence[str]) -> None:
        self.original = original
        self.failures: Tuple[str, ...] = tuple(failures)
        self.rollback = RollbackOutcome(attempted=True, ok=False, error="; ".join(self.failures))
        super().__init__(f"Rollback failed after apply error ({original}): {'; '.join(self.failures)}")


# ─────────────────────────────────────────────────────────────────────────────
# Provider / runner
# ─────────────────────────────────────────────────────────────────────────────
class ProviderError(RuntimeError):
    """The model provider failed to produce a response."""


class ToolsUnsupportedError(ProviderError):
    """The provider (or model) rejects tool calling."""


class RunnerError(RuntimeError):
    pass


class RunnerTimeoutError(RunnerError, TimeoutError):
    pass


class StepLimitExceeded(RunnerError):
    pass


class ToolCallLimitExceeded(RunnerError):
    pass


class RunCancelledError(RunnerError):
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Terminal failure
# ─────────────────────────────────────────────────────────────────────────────
class BuilderFailure(PatchError, RuntimeError):
    """
    Single structured failure surfaced to callers once the ladder is exhausted
    or a fatal error occurs. ``attempts`` holds every rung in order.
    """

    def __init__(self, reason: str, attempts: Iterable[AttemptRecord], cause: Optional[BaseException] = None) -> None:
        self.reason = reason
        self.attempts: List[AttemptRecord] = list(attempts)
        self.cause = cause
        self.rollback: Optional[RollbackOutcome] = getattr(cause, "rollback", None)
        history = " | ".join(a.describe() for a in self.attempts)
        super().__init__(f"{reason}: {history}" if history else reason)

    @property
    def category(self) -> str:  # type: ignore[override]
        return getattr(self.cause, "category", APPLY)


__all__ = [
    "SCHEMA",
    "STRUCTURAL",
    "NONCONFORMING",
    "AUTHORIZATION",
    "APPLY",
    "ROLLBACK",
    "PatchError",
    "PatchParseError",
    "PatchQualityError",
    "DisallowedPathError",
    "PatchApplyError",
    "SearchBlockNotFoundError",
    "AmbiguousSearchBlockError",
    "PathOutsideWorkspaceError",
    "RollbackError",
    "ProviderError",
    "ToolsUnsupportedError",
    "RunnerError",
    "RunnerTimeoutError",
    "StepLimitExceeded",
    "ToolCallLimitExceeded",
    "RunCancelledError",
    "BuilderFailure",
]
