"""
Logging

A single loguru logger for the service. Sync progress and failures go to
stdout; with `log_to_file` on they also go to a daily sync log under
`log_dir`.
"""
import sys

from loguru import logger

from app.config import Settings, get_settings

LINE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {message}"


def setup_logger(settings: Settings = None):
    settings = settings or get_settings()
    logger.remove()

    logger.add(sys.stdout, format=LINE_FORMAT, level=settings.log_level)

    if settings.log_to_file:
        logger.add(
            f"{settings.log_dir}/sync_{{time:YYYY-MM-DD}}.log",
            format=LINE_FORMAT,
            level="INFO",
            rotation="00:00",
            retention=f"{settings.log_retention_days} days",
        )

    return logger


log = setup_logger()
