"""Logging configuration using loguru.

- Console output always enabled at the configured level
- `logs/app.log`: main log, rotates at 50 MB, keeps 30 days
- `logs/errors.log`: errors only, rotates at 10 MB, keeps 90 days
"""

import sys
from pathlib import Path

from loguru import logger

from src.config import settings


def setup_logger():
    """Configure loguru sinks and return the shared logger."""
    logger.remove()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stdout,
        format=log_format,
        level=settings.log_level,
        colorize=True,
    )

    if not settings.log_to_file:
        return logger

    Path("logs").mkdir(exist_ok=True)

    logger.add(
        "logs/app.log",
        format=log_format,
        level="INFO",
        rotation="50 MB",
        retention="30 days",
        compression="zip",
        enqueue=True,
        backtrace=True,
        diagnose=True,
    )

    logger.add(
        "logs/errors.log",
        format=log_format,
        level="ERROR",
        rotation="10 MB",
        retention="90 days",
        compression="zip",
        enqueue=True,
        backtrace=True,
        diagnose=True,
    )

    return logger


# Initialize logger
log = setup_logger()
