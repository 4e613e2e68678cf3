#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright – Package Initialisation
===============================================================================

Exports
-------
* __version__     – resolved from installed package metadata
* get_version()   – helper returning the version string
* get_logger()    – re‑export of patchwright.logger.get_logger

Side‑effects
------------
Configures the root "patchwright" logger on first import so every sub‑module
shares the same rotating file + console handlers.
"""
from __future__ import annotations

import logging
from importlib.metadata import PackageNotFoundError, version as _pkg_version

from patchwright.logger import get_logger as _get_logger

_ROOT_LOGGER = _get_logger(None)

# -----------------------------------------------------------------------------
# Version helpers
# -----------------------------------------------------------------------------
try:
    __version__: str = _pkg_version("patchwright")
except PackageNotFoundError:
    # Source checkouts without metadata; keep in sync with pyproject.toml
    __version__ = "0.4.0"
    _ROOT_LOGGER.debug("Package metadata not found – using fallback version %s", __version__)


def get_version() -> str:
    """Return the package version string."""
    return __version__


def get_logger(name: str | None = None) -> logging.Logger:
    """
    Return a logger wired to Patchwright's handlers & formatting.

    Parameters
    ----------
    name : str | None
        Module logger name (e.g. ``__name__``) or None for the project root.
    """
    return _get_logger(name)


__all__ = ["__version__", "get_version", "get_logger"]
