"""
Centralized logging configuration for the application.
"""

from __future__ import annotations

import logging

from rich.logging import RichHandler

from .config import Settings

_FORMAT = "%(name)s - %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger with a rich console handler.

    Args:
        level: Log level name; falls back to ``MEMORYCORE_LOG_LEVEL``.
    """
    level_name = (level or Settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=_FORMAT,
        handlers=[RichHandler(show_path=False, rich_tracebacks=True)],
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger (usually called with ``__name__``)."""
    return logging.getLogger(name)
