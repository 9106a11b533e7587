"""Structured JSON logging for the service."""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from app.config import settings


def setup_logger(name: str = "posture_analyzer", level: str = settings.log_level) -> logging.Logger:
    """Return the application logger, attaching a JSON stdout handler once."""
    logger = logging.getLogger(name)
    logger.setLevel(level.upper())

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)

    return logger


logger = setup_logger()
