"""
Logging configuration for Memex.

Sets up console and rotating file handlers. Each process context
(``cli``, ``hook``, ``sync``) gets its own log file under the configured
log directory.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from memex.config import settings

_HANDLER_MARKER = "_memex_handler"


def _build_formatter() -> logging.Formatter:
    return logging.Formatter(fmt=settings.log_format, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(
    context: str = "cli",
    level: Optional[str] = None,
    console: Optional[bool] = None,
    log_dir: Optional[Path] = None,
) -> None:
    """
    Configure the ``memex`` logger hierarchy.

    Calling this more than once replaces previously installed Memex
    handlers, so it is safe to call from every entry point.

    Args:
        context: Name of the log file (``<context>.log``)
        level: Log level name, defaults to ``settings.log_level``
        console: Enable the stderr handler, defaults to ``settings.log_console_enabled``
        log_dir: Directory for the log file, defaults to ``settings.log_directory``

    Raises:
        PermissionError: If the log directory cannot be created
    """
    root = logging.getLogger("memex")
    root.setLevel((level or settings.log_level).upper())
    root.propagate = False

    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    formatter = _build_formatter()

    if console if console is not None else settings.log_console_enabled:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        setattr(stream_handler, _HANDLER_MARKER, True)
        root.addHandler(stream_handler)

    if settings.log_file_enabled:
        directory = log_dir or settings.log_directory
        directory.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            directory / f"{context}.log",
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_MARKER, True)
        root.addHandler(file_handler)
