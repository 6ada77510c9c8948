from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_dir: str = "logs") -> None:
    """stderr at `level`, plus a daily DEBUG file `tide_<date>.log` kept 30 days."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level)
    if log_dir:
        logger.add(
            str(Path(log_dir) / "tide_{time:YYYY-MM-DD}.log"),
            rotation="1 day",
            retention="30 days",
            level="DEBUG",
        )
