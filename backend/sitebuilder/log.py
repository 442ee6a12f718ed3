"""Logging configuration using loguru."""

import sys
from pathlib import Path

from loguru import logger

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """
    Configure the global loguru logger.

    Replaces loguru's default handler with a stderr sink at ``level`` and,
    when ``log_file`` is given, adds a rotating file sink.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=DEFAULT_FORMAT, colorize=True)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            level=level.upper(),
            format=DEFAULT_FORMAT,
            rotation=rotation,
            retention=retention,
            encoding="utf-8",
        )

    logger.debug(f"Logging configured (level={level.upper()}, file={log_file})")


__all__ = ["logger", "setup_logging"]
