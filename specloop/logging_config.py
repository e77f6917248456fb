"""
Logging configuration for specloop.

Modules log through ``logging.getLogger(__name__)``; the CLI calls
configure_logging() once to attach a console handler to the package logger.
User-facing progress goes through the rich console instead.
"""

import logging
import sys

# Simplified format for console output
_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Verbose format with call-site context
_DEBUG_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "%(module)s.%(funcName)s:%(lineno)d | %(message)s"
)

_PACKAGE_LOGGER = "specloop"


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Configure the specloop package logger.

    Logs go to stderr so that headless JSON output on stdout stays clean.
    Calling this more than once replaces the previous handler.

    Args:
        verbose: Log at DEBUG level with call-site details

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(_PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_specloop_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_DEBUG_FORMAT if verbose else _CONSOLE_FORMAT))
    handler._specloop_handler = True  # type: ignore[attr-defined]

    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False
    return logger
