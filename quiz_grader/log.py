"""
Logging setup.

All modules log through loguru's shared ``logger``; this module only
decides where records go and at which level.
"""

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO") -> None:
    """
    Replace loguru's default sink with a single stderr sink.

    Args:
        level: Minimum level to emit (e.g. "DEBUG", "INFO").
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
