#!/usr/bin/env python3
"""
Logging for the gravity allocator.

Every component logs through a child of the "gravity" logger, so one call to
setup_logging() routes the whole engine (console + optional log file).
Before setup, the first get_logger() call installs a console handler.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from env_utils import env_str

ROOT_LOGGER = "gravity"

_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Chatty libraries kept at WARNING unless verbose.
_QUIET_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio")


def _env_level(default: int) -> int:
    raw = env_str("GRAVITY_LOG_LEVEL")
    if not raw:
        return default
    val = str(raw).strip().upper()
    if val.isdigit():
        return int(val)
    return getattr(logging, val, default)


def _formatter() -> logging.Formatter:
    return logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT)


def _root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        root.addHandler(handler)
        root.setLevel(_env_level(logging.INFO))
        root.propagate = False
    return root


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Component logger gravity.<name>; inherits the root level unless given one."""
    _root()
    logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_logging(
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Replace the engine's handlers: console, plus log_file when given."""
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(_env_level(logging.DEBUG if verbose else logging.INFO) if level is None else level)
    root.propagate = False

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        root.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(_formatter())
    root.addHandler(console_handler)

    if not verbose:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    return get_logger("main")
