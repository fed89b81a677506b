"""
SecureMsg - Logging configuration for the command-line entry points.

Library modules only create module loggers; handlers are attached here,
once, by the CLI and the relay server.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

from .config import Config
from .constants import LOG_BACKUP_COUNT, LOG_DATE_FORMAT, LOG_FILENAME, LOG_FORMAT, LOG_MAX_BYTES, LOGS_DIR


def setup_logging(config: Config, data_dir: Optional[Path] = None, debug: bool = False) -> None:
    """
    Attach console and rotating file handlers to the root logger.

    Args:
        config: Configuration supplying the [logging] section
        data_dir: Directory whose logs/ subdirectory receives the log file
        debug: Force DEBUG level
    """
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.get("logging", "console_logging", True):
        console = RichHandler(level=level, show_path=debug, rich_tracebacks=debug)
        console.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(console)

    if data_dir is not None and config.get("logging", "file_logging", True):
        logs_dir = Path(data_dir) / LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILENAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        root.addHandler(file_handler)
