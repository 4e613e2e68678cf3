#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Command Line Interface
===============================================================================

Subcommands
-----------
• validate    – validate one patch payload (strict wire contract)
• schema      – print the bundled JSON schema for a patch format
• apply       – validate and apply a patch payload to a workspace (with rollback)
• build       – run the builder against a plan + context bundle
• version     – print package version

Global flags
------------
• --version   – print package version (equivalent to the `version` subcommand)

Examples
--------
  # 1) Validate a payload from stdin
  echo '{"patches":[{"action":"create","file":"a.py","content":"x = 1\\n"}]}' | patchwright validate --payload -

  # 2) Apply a file_writes payload
  patchwright apply --format file_writes --file patch.json /path/to/workspace

  # 3) Builder run (OpenAI provider, tool calls by default)
  patchwright build plan.json context.json /path/to/workspace --lane job-1:task-3:builder

  # 4) Print schema
  patchwright schema --format search_replace
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from patchwright import get_logger, get_version
from patchwright.config import BuilderConfig, LANES_DIR, RUN_LOG
from patchwright.errors import BuilderFailure, PatchError
from patchwright.models import BuilderMode, ContextBundle, PatchFormat, Plan
from patchwright.output_parser import parse_patch_output

from apply_patch import PatchApplier, apply_patch
from patch_validator import schema_for

log = get_logger(__name__)

_FORMATS = [f.value for f in PatchFormat]
_MODES = [m.value for m in BuilderMode]


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _read_payload(args: argparse.Namespace) -> Optional[str]:
    if getattr(args, "file", None):
        try:
            return Path(args.file).read_text(encoding="utf-8")
        except OSError as exc:
            log.error("Failed to read %s: %s", args.file, exc)
            return None
    if args.payload == "-":
        return sys.stdin.read()
    return args.payload


def _read_json(p: str, what: str) -> dict:
    path = Path(p).expanduser()
    if not path.exists():
        raise SystemExit(f"{what} file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SystemExit(f"{what} file is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SystemExit(f"{what} file must contain a JSON object")
    return data


def _resolve_workspace(p: str) -> Path:
    path = Path(p).expanduser()
    if not path.is_dir():
        raise SystemExit(f"Workspace directory not found: {path}")
    return path.resolve()


# ─────────────────────────────────────────────────────────────────────────────
# Subcommand handlers
# ─────────────────────────────────────────────────────────────────────────────

def cmd_validate(args: argparse.Namespace) -> int:
    """
    Validate a single patch payload.
    """
    payload = _read_payload(args)
    if not payload:
        log.error("Missing payload. Provide --payload <json> or --payload - (stdin) or --file <path>.")
        return 1
    try:
        parse_patch_output(payload, args.format, strict=True)
    except PatchError as exc:
        log.error("Patch invalid: %s", exc)
        return 1
    print("✓ Patch is valid.")
    return 0


def cmd_schema(args: argparse.Namespace) -> int:
    """
    Print the bundled JSON schema for ``--format``.
    """
    print(json.dumps(schema_for(args.format), indent=2, ensure_ascii=False))
    return 0


def cmd_apply(args: argparse.Namespace) -> int:
    """
    Validate and apply a payload; a failed apply is rolled back before exit.
    """
    workspace = _resolve_workspace(args.workspace)
    payload = _read_payload(args)
    if not payload:
        log.error("Missing payload. Provide --payload <json> or --payload - (stdin) or --file <path>.")
        return 1
    try:
        result = apply_patch(payload, workspace, args.format, allow_delete=args.allow_delete)
    except PatchError as exc:
        log.error("Patch not applied: %s", exc)
        return 1
    for path in result.touched:
        print(path)
    return 0


def cmd_build(args: argparse.Namespace) -> int:
    """
    Run the builder once and print the result record as JSON.
    """
    # Lazy imports: the OpenAI stack is only needed here.
    from patchwright.builder import BuilderRunner
    from patchwright.events import RunLogger
    from patchwright.interpreter import PatchInterpreter
    from patchwright.lanes import LaneHistory
    from patchwright.provider import OpenAIChatProvider
    from patchwright.tools import workspace_tools

    plan = Plan.from_dict(_read_json(args.plan, "Plan"))
    bundle = ContextBundle.from_dict(_read_json(args.context, "Context"))
    workspace = _resolve_workspace(args.workspace)

    cfg = BuilderConfig.from_env()
    cfg.model = args.model or cfg.model
    cfg.api_timeout_s = args.api_timeout or cfg.api_timeout_s
    if args.mode:
        cfg.mode = BuilderMode(args.mode)
    if args.format:
        cfg.patch_format = PatchFormat(args.format)

    provider = OpenAIChatProvider(model=cfg.model, timeout_s=cfg.api_timeout_s)
    events = RunLogger(args.run_log or RUN_LOG, lane_id=args.lane)
    runner = BuilderRunner(
        provider,
        PatchApplier(workspace),
        config=cfg,
        tools=workspace_tools(),
        interpreter=PatchInterpreter(
            provider,
            cfg.patch_format,
            timeout_s=cfg.api_timeout_s,
            max_retries=cfg.interpreter_retries,
            events=events,
        ),
        lanes=LaneHistory(args.lanes_dir or LANES_DIR, window=cfg.history_messages),
        events=events,
    )
    try:
        result = runner.run(plan, bundle, lane_id=args.lane)
    except BuilderFailure as exc:
        log.error("Builder failed: %s", exc)
        print(json.dumps({"error": str(exc), "attempts": [a.describe() for a in exc.attempts]}, indent=2))
        return 1
    print(result.to_json())
    return 0


def cmd_version(_args: argparse.Namespace) -> int:
    print(get_version())
    return 0


# ─────────────────────────────────────────────────────────────────────────────
# Argument parser
# ─────────────────────────────────────────────────────────────────────────────

def _add_payload_source(p: argparse.ArgumentParser) -> None:
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--payload", help="JSON string payload, or '-' to read from stdin.")
    src.add_argument("--file", help="Read JSON payload from a file path.")


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="patchwright",
        description="Patchwright – validated, rollback‑safe code patches from LLM builders",
    )

    # Global flags (keep subparsers optional so --version can succeed)
    p.add_argument(
        "--version",
        action="store_true",
        help="Print package version and exit.",
    )

    sub = p.add_subparsers(dest="cmd", metavar="command")

    # validate
    pv = sub.add_parser("validate", help="Validate a single patch payload")
    pv.add_argument("--format", choices=_FORMATS, default=PatchFormat.SEARCH_REPLACE.value, help="Patch format.")
    _add_payload_source(pv)
    pv.set_defaults(func=cmd_validate)

    # schema
    ps = sub.add_parser("schema", help="Print the JSON schema for a patch format")
    ps.add_argument("--format", choices=_FORMATS, default=PatchFormat.SEARCH_REPLACE.value, help="Patch format.")
    ps.set_defaults(func=cmd_schema)

    # apply
    pa = sub.add_parser("apply", help="Validate and apply a patch payload to a workspace")
    pa.add_argument("workspace", help="Workspace root directory.")
    pa.add_argument("--format", choices=_FORMATS, default=PatchFormat.SEARCH_REPLACE.value, help="Patch format.")
    pa.add_argument("--allow-delete", action="store_true", help="Permit delete actions.")
    _add_payload_source(pa)
    pa.set_defaults(func=cmd_apply)

    # build
    pb = sub.add_parser("build", help="Run the builder against a plan and context bundle")
    pb.add_argument("plan", help="Path to plan JSON.")
    pb.add_argument("context", help="Path to context bundle JSON.")
    pb.add_argument("workspace", help="Workspace root directory.")
    pb.add_argument("--mode", choices=_MODES, help="Builder mode (default: PATCHWRIGHT_MODE or tool_calls).")
    pb.add_argument("--format", choices=_FORMATS, help="Patch format (default: PATCHWRIGHT_PATCH_FORMAT).")
    pb.add_argument("--model", help="Model id (default: PATCHWRIGHT_MODEL).")
    pb.add_argument("--api-timeout", type=int, help="HTTP timeout (seconds).")
    pb.add_argument("--lane", help="Lane id for conversational history (job:task:role).")
    pb.add_argument("--lanes-dir", help="Directory for JSONL lane history.")
    pb.add_argument("--run-log", help="JSONL file receiving builder phase events.")
    pb.set_defaults(func=cmd_build)

    # version (subcommand, kept for parity)
    pvrs = sub.add_parser("version", help="Print package version")
    pvrs.set_defaults(func=cmd_version)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    try:
        parser = _parser()
        args = parser.parse_args(argv)

        # Handle global --version early
        if getattr(args, "version", False):
            print(get_version())
            return 0

        # Enforce that a subcommand was provided when not using --version
        if not hasattr(args, "func"):
            parser.print_help()
            return 2

        return int(args.func(args))  # type: ignore[misc]
    except KeyboardInterrupt:
        log.info("Interrupted by user (Ctrl‑C).")
        return 130
    except SystemExit as exc:
        # Propagate explicit SystemExit codes cleanly
        if isinstance(exc.code, str):
            log.error("%s", exc.code)
        return int(exc.code) if isinstance(exc.code, int) else 1
    except Exception as exc:
        log.exception("Fatal error in CLI: %s", exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
