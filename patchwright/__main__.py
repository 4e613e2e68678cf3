#!/usr/bin/env python3
"""
===============================================================================
Patchwright ▸ Module CLI Entrypoint
===============================================================================

This file allows the package to be executed with:

    python -m patchwright  [args …]

It is a thin wrapper around **patchwright.cli.main()** that logs a banner with
the resolved Python runtime and Patchwright version (helpful when users paste
logs). ``--version`` short‑circuits before the banner.
"""
from __future__ import annotations

import platform
import sys

from patchwright import get_logger, get_version

logger = get_logger(__name__)


def _print_banner() -> None:
    logger.info(
        "Patchwright %s – Python %s – %s",
        get_version(),
        platform.python_version(),
        platform.platform(),
    )


def main() -> None:
    argv = sys.argv[1:]
    if "--version" not in argv:
        _print_banner()

    # Lazy import keeps startup lightweight when --version used.
    from patchwright.cli import main as cli_main

    sys.exit(cli_main(argv))


if __name__ == "__main__":
    main()
