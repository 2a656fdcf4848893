"""loguru setup for the referral service."""

import sys

from loguru import logger


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    logger.remove()
    fmt = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function} | {message}"
    logger.add(
        sys.stdout,
        format=fmt,
        level=level.upper(),
        serialize=json,
        colorize=not json,
        backtrace=False,
        enqueue=True,
    )


__all__ = ["setup_logging"]
