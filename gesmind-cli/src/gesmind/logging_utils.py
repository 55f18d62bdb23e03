"""Logging setup shared by CLI commands."""

from __future__ import annotations

import logging
import os

_DEFAULT_LEVEL = "WARNING"


def _level_from_env() -> int:
    name = (os.environ.get("GESMIND_LOG_LEVEL") or _DEFAULT_LEVEL).strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


def setup_logging() -> None:
    """Configure root logging once; later calls only adjust the level."""
    root = logging.getLogger()
    level = _level_from_env()
    if root.handlers:
        root.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)-8s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        ),
    )
    root.setLevel(level)
    root.addHandler(handler)
