"""Logging setup.

All modules log through loguru's ``logger``; entry points call
``configure_logging`` once to install sinks.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> <level>[{level}]</level> {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} [{level}] {name}:{function}:{line} {message}"


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Install the stderr sink and, optionally, a rotating file sink.

    Args:
        level: Minimum level for both sinks
        log_file: Path of the log file; no file sink when None
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level,
        colorize=True,
    )

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level=level,
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )
