"""Centralized logging configuration for the ``sheet_ledger`` package.

``configure_logging(...)`` attaches a single ``StreamHandler`` to the package
logger and is called once by the CLI. Library modules only call
``get_logger(__name__)``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "sheet_ledger"
_LEVEL_ENV = "SHEET_LEDGER_LOG_LEVEL"
_CONFIGURED = False


def _level_from(value: int | str | None) -> int | None:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip().upper()
        if value.isdigit():
            return int(value)
        numeric = getattr(logging, value, None)
        if isinstance(numeric, int):
            return numeric
    return None


def _parse_level(level: int | str | None) -> int:
    resolved = _level_from(level)
    if resolved is None:
        resolved = _level_from(os.getenv(_LEVEL_ENV))
    return logging.WARNING if resolved is None else resolved


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Configure the package logger exactly once.

    ``level`` falls back to ``SHEET_LEDGER_LOG_LEVEL`` and then ``WARNING``.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)

    resolved = _parse_level(level)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or "%(asctime)s %(name)s %(levelname)s %(message)s"))

    logger.setLevel(resolved)
    logger.addHandler(handler)
    logger.propagate = False

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
