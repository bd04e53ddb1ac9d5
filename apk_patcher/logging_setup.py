"""Logging configuration for the CLI: rich console output plus a log file."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from apk_patcher.data.store import APP_DIR

LOG_FILE_NAME = "apk-patcher.log"
MAX_LOG_SIZE = 2 * 1024 * 1024
MAX_LOG_FILES = 3

_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(
    verbose: bool = False,
    console: Optional[Console] = None,
    log_dir: Optional[str] = None,
) -> None:
    """Attach a RichHandler and a rotating file handler to the root logger."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        show_time=False,
    )
    rich_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(rich_handler)

    log_dir = log_dir or os.path.join(APP_DIR, "logs")
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=MAX_LOG_SIZE,
            backupCount=MAX_LOG_FILES,
            encoding="utf-8",
        )
    except OSError as e:
        print(f"Failed to initialize log file: {e}", file=sys.stderr)
        return
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    root.addHandler(file_handler)
