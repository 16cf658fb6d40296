"""Logging setup for the entrypoints.

Library modules only call `logging.getLogger(__name__)`; the process that
owns stdout decides where records go.
"""

from __future__ import annotations

import logging

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Send `salon_tokens.*` records to stderr with one console handler."""
    logger = logging.getLogger("salon_tokens")
    logger.setLevel(level)

    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, DEFAULT_DATE_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
