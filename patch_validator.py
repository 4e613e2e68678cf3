#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ JSON‑Schema Patch Validator
===============================================================================

Purpose
-------
Validate a decoded builder payload against the bundled schema for its wire
format and raise a *classified* error when it does not conform:

    format A (search_replace)   {"patches": [{"action", "file", ...}]}
    format B (file_writes)      {"files":   [{"path", "content"}]}

Public API
----------
* ``validate_payload(data, fmt) -> dict``
    Ordered checks first (so the failure carries a precise ``code``), then the
    full Draft‑7 schema. Raises ``patchwright.errors.PatchParseError``.
* ``is_safe_repo_rel_posix(path) -> bool``   – canonical path guard
* ``normalize_rel_path(path) -> str``        – strips "./" prefixes
* ``is_placeholder_text(text) -> bool``      – ellipsis/TODO/<…> sentinels
* ``is_placeholder_path(path) -> bool``      – unresolved template segments
* ``schema_for(fmt) -> dict``                – the bundled schema

CLI usage
---------
    python patch_validator.py '{"patches":[...]}'
    python patch_validator.py --format file_writes -f payload.json
    python patch_validator.py --schema --format search_replace

Design notes
------------
* Schemas are loaded **once** at import time via ``importlib.resources`` and
  compiled into ``Draft7Validator`` instances.
* Error order matters for recovery: a missing/mistyped top‑level array is a
  schema‑level error, while a bad entry is structural. The builder ladder
  reads ``PatchParseError.code`` / ``.category``, never the message.
"""
from __future__ import annotations

import argparse
import json
import re
import sys
from importlib import resources
from pathlib import PurePosixPath
from typing import Any, Dict

from jsonschema import Draft7Validator, ValidationError

from patchwright import get_logger
from patchwright.errors import PatchParseError
from patchwright.models import PatchFormat

log = get_logger("patchwright.patch_validator")

# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------
_SCHEMA_FILES = {
    PatchFormat.SEARCH_REPLACE: "search_replace.schema.json",
    PatchFormat.FILE_WRITES: "file_writes.schema.json",
}


def _load_schema(name: str) -> Dict[str, Any]:
    """
    Load one bundled schema from ``patchwright/schemas``.

    Raises
    ------
    SystemExit
        If the schema is missing or broken (bad install).
    """
    try:
        ref = resources.files("patchwright").joinpath("schemas").joinpath(name)
        with ref.open(encoding="utf-8") as fh:
            schema = json.load(fh)
        Draft7Validator.check_schema(schema)
        return schema
    except FileNotFoundError as exc:  # pragma: no cover
        log.critical("%s not found inside package: %s", name, exc)
        raise SystemExit(1) from exc
    except json.JSONDecodeError as exc:  # pragma: no cover
        log.critical("%s is invalid JSON: %s", name, exc)
        raise SystemExit(1) from exc


_SCHEMAS: Dict[PatchFormat, Dict[str, Any]] = {fmt: _load_schema(name) for fmt, name in _SCHEMA_FILES.items()}
_VALIDATORS: Dict[PatchFormat, Draft7Validator] = {fmt: Draft7Validator(s) for fmt, s in _SCHEMAS.items()}


def schema_for(fmt: PatchFormat | str) -> Dict[str, Any]:
    """Return the bundled schema for *fmt*."""
    return _SCHEMAS[PatchFormat(fmt)]


# -----------------------------------------------------------------------------
# Path & content guards
# -----------------------------------------------------------------------------
_ACTIONS = ("create", "replace", "delete")
_DRIVE_PREFIX_RE = re.compile(r"^[A-Za-z]:")

_ELLIPSIS = r"(?:\.{3,}|…)"
_ELLIPSIS_ONLY_RE = re.compile(rf"^{_ELLIPSIS}$")

# Whole-text sentinels. A leading ellipsis only counts when prose follows it
# ("... existing code ..."); "...state," is a spread, not a placeholder.
_PLACEHOLDER_TEXT_RE = re.compile(
    rf"""^(?:
        {_ELLIPSIS}\s+[A-Za-z][^\n]*                           # "... existing code ..."
      | (?:TODO|TBD|FIXME)(?:[:\s.][^\n]*)?                  # bare TODO sentinel
      | <[^<>\n]{{0,60}}\b(?:content|contents|here|placeholder|omitted|unchanged|rest\ of)\b[^<>\n]{{0,60}}>
      | (?://|\#|--|/\*|<!--)\s*(?:\.{{3,}}|…|TODO|rest\ of|existing|unchanged|same\ as)[^\n]*
      | \[(?:\.{{3,}}|…|content|placeholder|code)\]
    )$""",
    re.IGNORECASE | re.VERBOSE,
)

_PLACEHOLDER_PATH_RE = re.compile(
    r"""(?:
        <[^>]*>              # <path>
      | \{\{ | \}\}          # {{ mustache }}
      | \$\{                 # ${template}
      | \.\.\.|…             # elided segments
      | (?:^|/)path/to/      # schema example paths
      | \bTODO\b
    )""",
    re.IGNORECASE | re.VERBOSE,
)


def normalize_rel_path(path: str) -> str:
    """Return *path* trimmed, with backslashes turned into '/' and leading './' removed."""
    s = (path or "").strip().replace("\\", "/")
    while s.startswith("./"):
        s = s[2:]
    return s


def is_safe_repo_rel_posix(path: str) -> bool:
    """
    Canonical path guard.

    Rules: relative POSIX path, no '..' segments, nothing under '.git', no drive
    letters, no redundant segments ('a//b', 'a/./b') and no trailing '/'.
    """
    if not isinstance(path, str) or not path.strip():
        return False
    raw = path.strip()
    if "\\" in raw or raw.startswith("/") or _DRIVE_PREFIX_RE.match(raw):
        return False
    parts = raw.split("/")
    if ".." in parts or ".git" in parts:
        return False
    p = PurePosixPath(raw)
    return str(p) == raw and all(p.parts)


def is_placeholder_text(text: Any, *, fragment: bool = False) -> bool:
    """
    True for empty strings and whole‑text sentinels like '...', 'TODO', '<content>'.

    With ``fragment`` (search/replace blocks) a lone ``...`` is code, e.g. a
    Python stub body, and is accepted.
    """
    if not isinstance(text, str):
        return False
    stripped = text.strip()
    if not stripped:
        return True
    if _ELLIPSIS_ONLY_RE.match(stripped):
        return not fragment
    return bool(_PLACEHOLDER_TEXT_RE.match(stripped))


def is_placeholder_path(path: str) -> bool:
    """True when *path* still contains unresolved template segments."""
    return bool(_PLACEHOLDER_PATH_RE.search(path or ""))


# -----------------------------------------------------------------------------
# Ordered checks (classification)
# -----------------------------------------------------------------------------
def _pretty_pointer(exc: ValidationError) -> str:
    return ".".join(["$", *[str(p) for p in exc.path]])


def _check_string(
    entry: Dict[str, Any], key: str, where: str, *, placeholder: bool = True, fragment: bool = False
) -> None:
    val = entry.get(key)
    if not isinstance(val, str):
        raise PatchParseError("invalid_field", f"Patch field '{key}' must be a non-empty string ({where})")
    if placeholder and is_placeholder_text(val, fragment=fragment):
        raise PatchParseError("placeholder", f"Patch field '{key}' at {where} is placeholder content")
    if not placeholder and not val.strip():
        raise PatchParseError("invalid_field", f"Patch field '{key}' must be a non-empty string ({where})")


def _check_search_replace(entries: list) -> None:
    for i, entry in enumerate(entries):
        where = f"patches[{i}]"
        if not isinstance(entry, dict):
            raise PatchParseError("entry_not_object", f"Patch entry must be an object ({where})")
        if entry.get("action") not in _ACTIONS:
            raise PatchParseError(
                "invalid_action",
                f"Patch action must be replace, create, or delete ({where}: {entry.get('action')!r})",
            )
        _check_string(entry, "file", where, placeholder=False)
        if entry["action"] == "replace":
            _check_string(entry, "search_block", where, fragment=True)
            _check_string(entry, "replace_block", where, fragment=True)
        elif entry["action"] == "create":
            _check_string(entry, "content", where)


def _check_file_writes(entries: list) -> None:
    for i, entry in enumerate(entries):
        where = f"files[{i}]"
        if not isinstance(entry, dict):
            raise PatchParseError("entry_not_object", f"Patch file entry must be an object ({where})")
        _check_string(entry, "path", where, placeholder=False)
        _check_string(entry, "content", where)


# =============================================================================
# Public API
# =============================================================================
def validate_payload(data: Any, fmt: PatchFormat | str) -> Dict[str, Any]:
    """
    Validate decoded *data* as a payload of wire format *fmt*.

    Returns
    -------
    dict
        The same object, unchanged.

    Raises
    ------
    PatchParseError
        With ``code`` one of: wrong_type, missing_array, unexpected_keys,
        empty_array, entry_not_object, invalid_action, invalid_field,
        placeholder.
    """
    fmt = PatchFormat(fmt)
    key = fmt.array_key

    if not isinstance(data, dict):
        raise PatchParseError("wrong_type", "Patch payload must be an object")
    if key not in data:
        other = fmt.other.array_key
        hint = f" (found '{other}', which belongs to the {fmt.other.value} format)" if other in data else ""
        raise PatchParseError("missing_array", f"Patch payload must include {key} array{hint}")
    if not isinstance(data[key], list):
        raise PatchParseError("wrong_type", f"Patch field '{key}' must be an array")
    extras = sorted(set(data) - {key})
    if extras:
        raise PatchParseError("unexpected_keys", f"Unexpected top-level keys for {fmt.value} payload: {extras}")
    if not data[key]:
        raise PatchParseError("empty_array", f"Patch payload '{key}' array is empty")

    if fmt is PatchFormat.SEARCH_REPLACE:
        _check_search_replace(data[key])
    else:
        _check_file_writes(data[key])

    # Whatever the ordered checks missed (extra entry keys, etc.).
    try:
        _VALIDATORS[fmt].validate(data)
    except ValidationError as exc:
        raise PatchParseError("invalid_field", f"Schema violation at {_pretty_pointer(exc)}: {exc.message}") from exc

    log.debug("Payload validated (format=%s, entries=%d)", fmt.value, len(data[key]))
    return data


# =============================================================================
# CLI wrapper
# =============================================================================
def _cli(argv: list[str] | None = None) -> int:
    """
    Minimal command‑line interface for manual checks.

    Returns
    -------
    int
        Exit code (0 ok, 1 error).
    """
    argv = argv if argv is not None else sys.argv[1:]
    parser = argparse.ArgumentParser(
        prog="patch_validator.py",
        description="Validate a builder patch payload against the bundled schema.",
    )
    parser.add_argument("payload", nargs="?", help="JSON string payload or '-' to read from stdin.")
    parser.add_argument("-f", "--file", dest="file", help="Read JSON payload from a file path.")
    parser.add_argument(
        "--format",
        default=PatchFormat.SEARCH_REPLACE.value,
        choices=[f.value for f in PatchFormat],
        help="Wire format to validate against (default: search_replace).",
    )
    parser.add_argument("--schema", action="store_true", help="Print the schema for --format and exit.")
    args = parser.parse_args(argv)

    if args.schema:
        print(json.dumps(schema_for(args.format), indent=2, ensure_ascii=False))
        return 0

    if args.file:
        try:
            with open(args.file, "r", encoding="utf-8") as fh:
                payload = fh.read()
        except OSError as exc:
            log.error("Failed to read file '%s': %s", args.file, exc)
            return 1
    elif args.payload == "-":
        payload = sys.stdin.read()
    else:
        payload = args.payload

    if not payload:
        parser.print_usage(sys.stderr)
        log.error("Missing payload. Provide a JSON string, '-', or -f/--file.")
        return 1

    try:
        validate_payload(json.loads(payload), args.format)
    except json.JSONDecodeError as exc:
        log.error("❌ Payload is not valid JSON: %s", exc)
        return 1
    except PatchParseError as exc:
        log.error("❌ Patch invalid [%s]: %s", exc.code, exc)
        return 1
    print("✓ Patch is valid.")
    return 0


__all__ = [
    "validate_payload",
    "schema_for",
    "is_safe_repo_rel_posix",
    "normalize_rel_path",
    "is_placeholder_text",
    "is_placeholder_path",
]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(_cli())
