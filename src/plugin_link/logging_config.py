"""Logging setup for plugin processes.

Logs go to stderr and, when a log directory is given, to a file rotated at
midnight that keeps two weeks of history. Messages the host forwards via
"ui.log" land on the `plugin_link.ui` logger.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import TextIO

LOG_FORMAT = "%(asctime)s [%(levelname)s](%(name)s) -> %(message)s"
LOG_FILE_NAME = "plugin.log"
LOG_BACKUP_DAYS = 14

UI_LOGGER_NAME = "plugin_link.ui"

# Marks handlers installed here so a second call replaces them
_HANDLER_MARK = "_plugin_link_handler"


def configure_logging(
    level: int | str = logging.INFO,
    log_dir: Path | str | None = None,
    *,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        level: Log level name or number
        log_dir: Directory for rotating log files; None logs to stderr only
        stream: Console stream, defaults to stderr

    Returns:
        The root logger
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        if getattr(handler, _HANDLER_MARK, False):
            root_logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setFormatter(formatter)
    setattr(console_handler, _HANDLER_MARK, True)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            log_path / LOG_FILE_NAME,
            when="midnight",
            backupCount=LOG_BACKUP_DAYS,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_MARK, True)
        root_logger.addHandler(file_handler)

    if isinstance(level, str):
        level = level.upper()
    root_logger.setLevel(level)
    return root_logger


def get_ui_logger() -> logging.Logger:
    """Logger receiving messages forwarded by the host UI."""
    return logging.getLogger(UI_LOGGER_NAME)
