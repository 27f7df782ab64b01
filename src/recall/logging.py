"""Loguru sink configuration for Recall.

Library modules log with ``from loguru import logger`` and never configure
sinks themselves; the CLI (or the embedding application) calls
``configure_logging()`` once at startup.
"""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{line} | {message}"


def configure_logging(level: str = "INFO", log_file: Path | str | None = None) -> None:
    """Replace loguru's default sink with Recall's stderr (and optional file) sinks.

    Args:
        level: Minimum level for every sink (DEBUG, INFO, WARNING, ERROR).
        log_file: Optional path of a rotating log file.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_FORMAT, colorize=True)

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            level=level.upper(),
            format=_FORMAT,
            rotation="10 MB",
            retention="7 days",
            encoding="utf-8",
        )
