"""Loguru helpers for consistent console and file logging in CLI commands."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from mcpgate.config.loader import get_data_dir

_CONSOLE_FORMAT = "<dim>{time:HH:mm:ss.SSS}</dim> | <level>{level: <8}</level> | <level>{message}</level>"
_SINK_IDS: dict[str, int] = {}


def console_level(*, verbose: bool, quiet: bool) -> str:
    if verbose:
        return "DEBUG"
    if quiet:
        return "WARNING"
    return "INFO"


def configure_console_logging(*, verbose: bool = False, quiet: bool = False, color: bool = True) -> str:
    """Replace loguru's default sink with one at the requested verbosity."""
    level = console_level(verbose=verbose, quiet=quiet)
    logger.remove()
    _SINK_IDS.clear()
    logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, colorize=color)
    logger.enable("mcpgate")
    return level


def ensure_rotating_log_file(name: str, level: str = "INFO") -> Path:
    """Ensure a rotating log sink for the given command name."""
    log_path = get_data_dir() / "logs" / f"{name}.log"
    if name in _SINK_IDS:
        return log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _SINK_IDS[name] = logger.add(
        str(log_path),
        level=level,
        rotation="10 MB",
        retention="14 days",
        enqueue=True,
        encoding="utf-8",
        backtrace=False,
        diagnose=False,
    )
    return log_path
