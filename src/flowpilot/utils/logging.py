"""Logging configuration."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from flowpilot import constants
from flowpilot.utils.pathing import ensure_runtime_directories

# Per-request chatter from the HTTP client drowns out run transitions.
NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: Optional[int] = None, filename: str = "flowpilot.log") -> None:
    """Configure root logging with console + rotating file handlers."""
    ensure_runtime_directories()
    if level is None:
        level = logging.getLevelName(constants.LOG_LEVEL.upper())
        if not isinstance(level, int):
            level = logging.INFO

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        constants.LOG_DIR / filename, maxBytes=5_000_000, backupCount=5
    )
    file_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(console_handler)
    root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
