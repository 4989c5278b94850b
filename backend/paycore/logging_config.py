"""Logging configuration for the payment core."""
import logging
import sys
from typing import Any

from paycore.config import Settings


def setup_logging(settings: Settings) -> None:
    """
    Configure the ``paycore`` logger tree from settings.

    Every module logs through ``logging.getLogger(__name__)``, so configuring
    the package root is enough to route all payment logs to one handler.

    Args:
        settings: Application settings (LOG_LEVEL, LOG_FORMAT, LOG_FILE).
    """
    handler: logging.FileHandler | logging.StreamHandler[Any]
    handler = (
        logging.FileHandler(settings.LOG_FILE) if settings.LOG_FILE else logging.StreamHandler(sys.stderr)
    )

    if settings.LOG_FORMAT == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"module": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler.setFormatter(formatter)

    logger = logging.getLogger("paycore")
    logger.setLevel(settings.LOG_LEVEL.upper())

    # Close and remove existing handlers (reload-safe)
    for old_handler in logger.handlers[:]:
        old_handler.close()
        logger.removeHandler(old_handler)

    logger.addHandler(handler)
    logger.propagate = False
