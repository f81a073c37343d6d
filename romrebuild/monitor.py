"""Runtime logging helpers for romrebuild."""

from __future__ import annotations

import logging
import os
import sys
from collections import deque
from pathlib import Path
from typing import List, Optional

LOGGER_NAME = "romrebuild"
DEFAULT_LOG_FILE = os.path.expanduser("~/.romrebuild/events.log")

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_file_handler: Optional[logging.FileHandler] = None
_echo_handler: Optional[logging.StreamHandler] = None


def get_log_path(log_file: Optional[str] = None) -> Path:
    """Return the event log path, creating its folder."""
    path = Path(log_file or DEFAULT_LOG_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def setup_monitoring(log_file: Optional[str] = None, echo: bool = False,
                     level: int = logging.INFO) -> logging.Logger:
    """
    Configure the project logger once per process.

    Calling again with a different file swaps the file handler; echo adds a
    stderr handler with the same format.
    """
    global _file_handler, _echo_handler
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    log_path = get_log_path(log_file)

    if _file_handler is not None and _file_handler.baseFilename != os.path.abspath(log_path):
        logger.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None

    if _file_handler is None:
        _file_handler = logging.FileHandler(log_path, encoding="utf-8")
        _file_handler.setFormatter(formatter)
        logger.addHandler(_file_handler)

    if echo and _echo_handler is None:
        _echo_handler = logging.StreamHandler(sys.stderr)
        _echo_handler.setFormatter(formatter)
        logger.addHandler(_echo_handler)
    elif not echo and _echo_handler is not None:
        logger.removeHandler(_echo_handler)
        _echo_handler = None

    return logger


def log_event(event: str, message: str, level: int = logging.INFO) -> None:
    """Emit a "<event> | <message>" line on the project logger."""
    logging.getLogger(LOGGER_NAME).log(level, "%s | %s", event, message)


def tail_events(log_file: Optional[str] = None, lines: int = 50) -> List[str]:
    """Return the last lines of the event log (empty if there is none yet)."""
    path = Path(log_file or DEFAULT_LOG_FILE)
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=max(0, lines))]
