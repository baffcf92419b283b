"""Logging setup: levelled, prefixed output to the console and a log file."""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

__all__ = ["LOG_FILE_NAME", "PACKAGE_LOGGER", "setup_logging", "close_log_file"]

LOG_FILE_NAME = "blockchain.log"
PACKAGE_LOGGER = "shardchain"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
}

_PREFIXES = {
    logging.DEBUG: ("DEBUG", "\x1b[34m"),
    logging.INFO: ("INFO", "\x1b[32m"),
    logging.WARNING: ("WARN", "\x1b[33m"),
    logging.ERROR: ("ERROR", "\x1b[31m"),
}
_RESET = "\x1b[0m"


class _PrefixFormatter(logging.Formatter):
    """Formats records as ``[LEVEL] date time file:line: message``."""

    def __init__(self, colored: bool) -> None:
        super().__init__(
            "%(asctime)s %(filename)s:%(lineno)d: %(message)s",
            datefmt="%Y/%m/%d %H:%M:%S",
        )
        self._colored = colored

    def format(self, record: logging.LogRecord) -> str:
        level = min(
            (lvl for lvl in _PREFIXES if lvl >= record.levelno),
            default=logging.ERROR,
        )
        name, color = _PREFIXES[level]
        prefix = f"[{name}] "
        if self._colored:
            prefix = f"{color}{prefix}{_RESET}"
        return prefix + super().format(record)


class _ConsoleHandler(logging.Handler):
    """Writes errors to stderr and everything else to stdout.

    The streams are looked up on every record so that redirected
    streams are always honoured.
    """

    def __init__(self) -> None:
        super().__init__()
        self._plain = _PrefixFormatter(colored=False)
        self._colored = _PrefixFormatter(colored=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream: TextIO = sys.stderr if record.levelno >= logging.ERROR else sys.stdout
            formatter = self._colored if _is_terminal(stream) else self._plain
            stream.write(formatter.format(record) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


def _is_terminal(stream: TextIO) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


class _LogState:
    def __init__(self) -> None:
        self.console: logging.Handler | None = None
        self.file_handler: logging.FileHandler | None = None
        self.file_name: str | None = None


_state = _LogState()


def setup_logging(
    level: str | None = None, log_file: str | os.PathLike | None = LOG_FILE_NAME
) -> logging.Logger:
    """Configure the package logger and return it.

    ``level`` defaults to the ``LOG_LEVEL`` environment variable, then to
    ``INFO``. Recognised levels are ``DEBUG``, ``INFO`` and ``WARN``; any
    other value leaves only errors enabled. Records go to the console and,
    unless ``log_file`` is ``None``, are appended to that file.
    """
    name = (level if level is not None else os.environ.get("LOG_LEVEL", "")).upper()
    name = name or "INFO"
    threshold = _LEVELS.get(name, logging.ERROR)

    logger = logging.getLogger(PACKAGE_LOGGER)
    close_log_file()
    if _state.console is not None:
        logger.removeHandler(_state.console)

    _state.console = _ConsoleHandler()
    logger.addHandler(_state.console)

    if log_file is not None:
        handler = logging.FileHandler(os.fspath(log_file), mode="a", encoding="utf-8")
        handler.setFormatter(_PrefixFormatter(colored=False))
        logger.addHandler(handler)
        _state.file_handler = handler
        _state.file_name = os.fspath(log_file)

    logger.setLevel(threshold)
    logger.propagate = False
    logger.info(
        "Logging initialized. Level: %s. Output to console and file '%s'",
        name,
        _state.file_name,
    )
    return logger


def close_log_file() -> bool:
    """Close the log file if one is open. Return whether one was closed."""
    handler = _state.file_handler
    if handler is None:
        return False
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.info("Closing log file: %s", _state.file_name)
    logger.removeHandler(handler)
    try:
        handler.close()
    except OSError as exc:
        sys.stderr.write(f"Error closing log file '{_state.file_name}': {exc}\n")
    _state.file_handler = None
    _state.file_name = None
    return True