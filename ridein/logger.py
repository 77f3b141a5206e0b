"""Logging setup for the RideIn client core."""

from __future__ import annotations

import logging
import os
import sys

from ridein.config import LoggingConfig

LOGGER_NAME = "ridein"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILENAME = "ridein.log"


def configure_logging(config: LoggingConfig) -> logging.Logger:
    """Attach stdout and file handlers to the package logger once."""
    logger = logging.getLogger(LOGGER_NAME)
    level = logging.getLevelName(str(config.level).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level '{config.level}'")
    logger.setLevel(level)
    logger.propagate = False
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    os.makedirs(config.log_dir, exist_ok=True)
    file_handler = logging.FileHandler(
        os.path.join(config.log_dir, LOG_FILENAME), encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return logger
