"""Companion logging configuration.

All modules log through `logging.getLogger(__name__)` below the `companion`
logger. This module only attaches handlers and levels, once, at daemon start.

Environment:
    COMPANION_LOG_LEVEL: level name (default INFO)
    COMPANION_LOG_FILE: optional log file path in addition to stderr
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure Companion logging.

    Args:
        level: Optional override for `COMPANION_LOG_LEVEL`.
    """
    if level:
        os.environ["COMPANION_LOG_LEVEL"] = level

    level_name = os.getenv("COMPANION_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()
    root = logging.getLogger("companion")
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file = os.getenv("COMPANION_LOG_FILE")
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # uvicorn access logs are noise for a websocket daemon
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
