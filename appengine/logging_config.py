"""
Logging setup for the data access layer.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

from .config import LoggingSettings


def setup_logging(settings: LoggingSettings) -> logging.Logger:
    """
    Configure the package loggers from settings.

    Installs a stderr handler and, when settings.file is set, a rotating
    file handler. Calling it again replaces previously installed handlers.

    Returns:
        The configured package logger
    """
    logger = logging.getLogger("appengine")
    logger.setLevel(getattr(logging, settings.level))
    formatter = logging.Formatter(settings.format)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if settings.file:
        log_path = Path(settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
