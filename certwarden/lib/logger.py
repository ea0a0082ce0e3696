"""
Logging configuration for certwarden.

This module provides the bullet-point formatter and initialization function
used for consistent log output across the auditing pipeline.

Level policy:
- INFO:    progress and summaries
- DEBUG:   verbose traces (e.g. objects skipped because of a missing attribute)
- WARNING: unresolvable identities and failed directory lookups
- ERROR:   catalog failures and fatal errors
"""

import logging as _logging
import sys
from typing import Dict

_IS_VERBOSE = False  # Flag to control verbosity of logging output


def set_verbose(is_verbose: bool) -> None:
    """
    Set the verbosity level for logging.

    Args:
        is_verbose: Boolean indicating whether to enable verbose logging
    """
    global _IS_VERBOSE
    _IS_VERBOSE = is_verbose  # type: ignore


def is_verbose() -> bool:
    """
    Check if verbose logging is enabled.

    Returns:
        Boolean indicating whether verbose logging is enabled
    """
    return _IS_VERBOSE


# Bullet point mapping for different log levels
BULLET_POINTS: Dict[int, str] = {
    _logging.INFO: "[*]",
    _logging.DEBUG: "[+]",
    _logging.WARNING: "[!]",
    _logging.ERROR: "[-]",
    _logging.CRITICAL: "[-]",
}


class Formatter(_logging.Formatter):
    """
    Formatter that prefixes each message with a bullet for its level.
    """

    def __init__(self) -> None:
        super().__init__("%(bullet)s %(message)s")

    def format(self, record: _logging.LogRecord) -> str:
        record.bullet = BULLET_POINTS.get(record.levelno, "[-]")
        return super().format(record)


def init(
    level: int = _logging.INFO,
    logger_name: str = "certwarden",
    propagate: bool = False,
) -> None:
    """
    Initialize the certwarden logger with the bullet formatter.

    Args:
        level: Log level to set (default: INFO)
        logger_name: Name of the logger to configure (default: "certwarden")
        propagate: Whether to propagate logs to parent loggers (default: False)
    """
    handler = _logging.StreamHandler(sys.stdout)
    handler.setFormatter(Formatter())

    logger = _logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates on re-initialization
    if logger.handlers:
        logger.handlers.clear()

    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


# Logger instance for direct import
logging = _logging.getLogger("certwarden")
