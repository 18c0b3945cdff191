"""Runtime directory layout."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from flowpilot import constants

LOG = logging.getLogger(__name__)


def runtime_directories() -> List[Path]:
    """Directories FlowPilot writes to, read from constants at call time."""
    return [constants.HOME_DIR, constants.LOG_DIR, constants.DB_FILE.parent]


def ensure_runtime_directories() -> List[Path]:
    """Create missing runtime directories and return the ones created."""
    created: List[Path] = []
    for directory in runtime_directories():
        if directory.is_dir():
            continue
        directory.mkdir(parents=True, exist_ok=True)
        created.append(directory)
    if created:
        LOG.debug("Created runtime directories: %s", ", ".join(str(path) for path in created))
    return created
