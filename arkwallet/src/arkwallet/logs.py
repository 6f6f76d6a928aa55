"""
Logging setup for applications built on arkwallet.
"""

from __future__ import annotations

import sys

from loguru import logger

from arkwallet.config import get_settings


def setup_logging(level: str | None = None) -> None:
    """Replace loguru's default sink; ``level`` defaults to ``ARK_LOG_LEVEL``."""
    level = (level or get_settings().log_level).upper()
    logger.remove()

    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level,
        colorize=True,
    )
    logger.debug(f"Logging at {level}")
