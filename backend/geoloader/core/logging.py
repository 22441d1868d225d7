"""Logging setup for the CLI and HTTP entrypoints.

Modules log through ``logging.getLogger(__name__)``; this module only
attaches a single stream handler to the ``geoloader`` logger so repeated
configuration (tests, app reloads) never duplicates output.
"""

from __future__ import annotations

import logging

LOGGER_NAME = "geoloader"
LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger and return it.

    Args:
        level: Log level name such as ``"INFO"`` or ``"debug"``.

    Returns:
        The configured ``geoloader`` logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

    return logger
