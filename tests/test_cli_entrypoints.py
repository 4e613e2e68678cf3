#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
CLI smoke tests for entrypoints
===============================================================================

Goals
-----
* Ensure the module entrypoint works:

      python -m patchwright --version

  This path must **not** import the OpenAI SDK; it should return quickly with
  the package version.

* Ensure the console script is available and shows help:

      patchwright --help

* Drive the offline subcommands (validate / schema / apply) in‑process.

These are **fast** smoke checks to catch packaging/entrypoint regressions.
"""
from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from patchwright.cli import main

log = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")


def _run(cmd: list[str]) -> tuple[int, str]:
    """
    Run *cmd*, returning (returncode, combined stdout+stderr).
    """
    proc = subprocess.run(cmd, capture_output=True, text=True)
    out = (proc.stdout or "") + (proc.stderr or "")
    log.info("Ran: %s\n%s", " ".join(cmd), out.strip())
    return proc.returncode, out


# Accept classic "X.Y.Z" or PEP 440 local/dev segments (e.g., 0.4.0.dev1, 0.4.0+local)
_PEP440ish = re.compile(r"\b\d+\.\d+\.\d+(?:[A-Za-z0-9_.+-]+)?\b")


def test_module_entrypoint_version() -> None:
    """
    `python -m patchwright --version` should print a version and exit 0.
    """
    code, out = _run([sys.executable, "-m", "patchwright", "--version"])
    assert code == 0, "Module entrypoint should exit 0 for --version"
    assert _PEP440ish.search(out), f"Unexpected version output: {out!r}"


def test_console_script_help() -> None:
    """
    `patchwright --help` should render argparse help and exit 0.

    If the console script is not on PATH (e.g. tests run without an editable
    install), the test is skipped rather than failing.
    """
    exe = shutil.which("patchwright")
    if not exe:
        pytest.skip("console script `patchwright` not found on PATH")

    code, out = _run([exe, "--help"])
    assert code == 0, "Console script should exit 0 for --help"
    assert "patchwright" in out
    assert "validate" in out and "build" in out


# ─────────────────────────────── in‑process ──────────────────────────────────
_VALID_SR = json.dumps({"patches": [{"action": "replace", "file": "a.py", "search": "A = 1", "replace": "A = 2"}]})


def test_validate_ok_and_invalid(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["validate", "--payload", _VALID_SR]) == 0
    assert "Patch is valid" in capsys.readouterr().out

    assert main(["validate", "--format", "file_writes", "--payload", _VALID_SR]) == 1
    assert main(["validate", "--payload", "Sure! here is the patch"]) == 1


def test_schema_prints_json(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["schema", "--format", "file_writes"]) == 0
    schema = json.loads(capsys.readouterr().out)
    assert schema["required"] == ["files"]


def test_apply_subcommand(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "a.py").write_text("A = 1\n", encoding="utf-8")
    patch_file = tmp_path / "patch.json"
    patch_file.write_text(_VALID_SR, encoding="utf-8")

    assert main(["apply", str(tmp_path), "--file", str(patch_file)]) == 0
    assert capsys.readouterr().out.strip() == "a.py"
    assert (tmp_path / "a.py").read_text(encoding="utf-8") == "A = 2\n"

    # Search text is gone now: nothing changes and the exit code reports it.
    assert main(["apply", str(tmp_path), "--file", str(patch_file)]) == 1
    assert (tmp_path / "a.py").read_text(encoding="utf-8") == "A = 2\n"


def test_missing_workspace_and_no_subcommand(tmp_path: Path) -> None:
    assert main(["apply", str(tmp_path / "nope"), "--payload", _VALID_SR]) == 1
    assert main([]) == 2
