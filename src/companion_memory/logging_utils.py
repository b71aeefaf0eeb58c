"""Loguru sink setup for applications embedding the memory subsystem."""

from __future__ import annotations

import sys

from loguru import logger


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Replace loguru's default sink with stderr (and optionally a file).

    Args:
        level: Minimum level for all sinks
        log_file: Optional path of a rotating log file
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        colorize=True,
    )
    if log_file:
        logger.add(
            log_file,
            level=level,
            rotation="10 MB",
            retention="30 days",
            encoding="utf-8",
            enqueue=True,
        )
