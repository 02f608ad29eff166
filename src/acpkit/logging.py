"""
Logging setup for acpkit.

Every module logs through ``get_logger`` so that one call to
``setup_logging`` controls the whole package. Lines an agent writes to its
stderr go to a separate ``acpkit.agent.stderr`` logger, which stays quiet
unless explicitly enabled.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

ROOT_LOGGER = "acpkit"
AGENT_STDERR_LOGGER = f"{ROOT_LOGGER}.agent.stderr"
LEVEL_ENV_VAR = "ACPKIT_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _coerce_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    # getLevelName maps known names to their number, anything else to a string
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    level: str | int | None = None,
    stream: TextIO | None = None,
    file: str | None = None,
    agent_stderr: bool = False,
) -> None:
    """
    Configure the ``acpkit`` logger tree.

    Args:
        level: Level name or number. Falls back to ``$ACPKIT_LOG_LEVEL``, then INFO.
        stream: Console stream (defaults to stderr)
        file: Optional log file, appended to
        agent_stderr: Forward agent subprocess stderr lines (logged at DEBUG)

    Example:
        setup_logging("DEBUG", agent_stderr=True)
    """
    resolved = _coerce_level(level or os.environ.get(LEVEL_ENV_VAR) or "INFO")

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(resolved)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]
    if file:
        handlers.append(logging.FileHandler(file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    logging.getLogger(AGENT_STDERR_LOGGER).setLevel(
        logging.DEBUG if agent_stderr else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    """Logger for an acpkit submodule, e.g. ``get_logger("manager")``."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
