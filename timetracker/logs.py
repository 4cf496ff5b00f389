"""Logging setup for the command-line entry points.

Library modules only create ``logging.getLogger(__name__)`` loggers; the
daemon and CLI call ``setup_logging`` once at startup.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger.

    Args:
        level: Level name such as "INFO" or "DEBUG". Unknown names fall back
            to INFO.
        log_file: Optional path of a file to log to in addition to stderr.
    """
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    handlers = []

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file:
        path = Path(log_file).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            print(f"Could not open log file {path}: {e}", file=sys.stderr)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(numeric_level)
