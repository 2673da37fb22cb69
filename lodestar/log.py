"""Loguru sink configuration for applications embedding Lodestar."""

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", serialize: bool = False) -> None:
    """
    Replace loguru's default sink with one stderr sink.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ...)
        serialize: Emit JSON lines instead of the human-readable format
    """
    logger.remove()
    if serialize:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
    else:
        logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
