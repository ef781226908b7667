"""Logging setup. Records go to stderr because stdout carries the MCP stream."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | int = "WARNING") -> None:
    root = logging.getLogger("appbridge")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    root.setLevel(level)
    if not any(getattr(h, "_appbridge", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._appbridge = True  # type: ignore[attr-defined]
        root.addHandler(handler)
