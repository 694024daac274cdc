"""Logging for codeloop.

Everything logs under the ``codeloop`` logger hierarchy; modules take a child
via ``get_logger("dispatcher")``. Nothing is emitted until the host calls
``setup_logging``, which routes records to a file (``logging.file`` or the
``CODELOOP_LOG`` environment variable) or, on an interactive console, stderr.

Verbosity runs error(0), warning(1), info(2), verbose(3), trace(4).
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from codeloop.config.schema import LoggingConfig

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s]: %(message)s"
DATE_FORMAT = "%H:%M:%S"
LOG_ENV_VAR = "CODELOOP_LOG"

logger = logging.getLogger("codeloop")

# Handlers installed by setup_logging; empty means not configured
_installed: list[logging.Handler] = []

_NAMED_LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_VERBOSITY = (logging.ERROR, logging.WARNING, logging.INFO, VERBOSE, TRACE)


class _Formatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


def resolve_level(config: LoggingConfig | None) -> int:
    """Effective level for ``config``; ``verbose`` takes precedence over ``level``."""
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        return _VERBOSITY[max(0, min(config.verbose, len(_VERBOSITY) - 1))]
    if config.level:
        return _NAMED_LEVELS.get(config.level.upper(), logging.INFO)
    return logging.INFO


def _log_path(config: LoggingConfig | None) -> Path | None:
    raw = (config.file if config else None) or os.environ.get(LOG_ENV_VAR)
    return Path(raw).expanduser() if raw else None


def _build_handler(path: Path | None) -> logging.Handler | None:
    """File handler for ``path``, else stderr when it is a terminal."""
    if path is not None:
        try:
            return logging.FileHandler(path, mode="a", encoding="utf-8")
        except OSError as e:
            if not sys.stderr.isatty():
                return None
            print(f"[codeloop] cannot open log file {path}: {e}", file=sys.stderr)
    if sys.stderr.isatty():
        return logging.StreamHandler(sys.stderr)
    return None


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Install the codeloop log handler once; later calls do nothing.

    Call ``reset_logging`` first to apply a different configuration.
    """
    if _installed:
        return
    level = resolve_level(config)
    logger.setLevel(level)

    handler = _build_handler(_log_path(config))
    if handler is None:
        # Remember the attempt so a later call stays a no-op
        handler = logging.NullHandler()
    handler.setLevel(level)
    handler.setFormatter(_Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    _installed.append(handler)


def reset_logging() -> None:
    """Remove and close the handlers ``setup_logging`` installed."""
    while _installed:
        handler = _installed.pop()
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


def get_logger(name: str | None = None) -> logging.Logger:
    """The codeloop logger, or its child ``name`` (e.g. ``"loop"``)."""
    return logger.getChild(name) if name else logger
