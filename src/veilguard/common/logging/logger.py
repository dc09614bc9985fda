"""Centralized logging configuration."""

import logging
from typing import Optional


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get a configured logger instance.

    Args:
        name: Logger name, usually ``__name__``
        level: Level name (e.g. "INFO"). Defaults to the configured log level.
    """
    if level is None:
        from veilguard.common.config import get_config
        level = get_config().log_level.value

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger
