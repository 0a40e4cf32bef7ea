"""Logging setup shared by the InvoiceApp sync engine and its command line."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from core import app_paths

LOG_FILENAME = "invoiceapp.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s %(message)s"

_configured_path: Optional[Path] = None


def _has_file_handler(logger: logging.Logger, path: Path) -> bool:
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path)
        for handler in logger.handlers
    )


def _has_console_handler(logger: logging.Logger) -> bool:
    return any(
        type(handler) is logging.StreamHandler and handler.stream is sys.stderr
        for handler in logger.handlers
    )


def configure_logging(
    level: int = logging.INFO,
    log_path: Optional[Path] = None,
    *,
    console: bool = False,
) -> Path:
    """Send log records to ``invoiceapp.log`` and optionally to stderr.

    Parameters
    ----------
    level:
        Minimum level for the root logger. ``logging.INFO`` records every push,
        merge and token renewal; ``logging.DEBUG`` adds timer decisions.
    log_path:
        Explicit log file. Defaults to ``<app dir>/logs/invoiceapp.log``.
    console:
        Also echo records to stderr, used by ``sync_cli --verbose``.

    Returns
    -------
    pathlib.Path
        The log file in use.

    Calling this again is harmless: handlers already attached to the root
    logger are not duplicated.
    """

    global _configured_path

    target = Path(log_path) if log_path is not None else app_paths.logs_path(LOG_FILENAME)
    target.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level if not root.handlers else min(root.level, level))

    if not _has_file_handler(root, target):
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    if console and not _has_console_handler(root):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        root.addHandler(console_handler)

    _configured_path = target
    root.debug("Logging configured. Writing to %s", target)
    return target


def get_log_path() -> Path:
    """Return the active log file, configuring logging on first use."""

    if _configured_path is None:
        return configure_logging()
    return _configured_path


__all__ = ["configure_logging", "get_log_path", "LOG_FILENAME"]
