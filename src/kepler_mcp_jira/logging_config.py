"""Logging configuration for the Kepler Jira auth core.

Modules call ``get_logger(__name__)`` and log through children of the
``kepler_mcp_jira`` logger. ``setup_logging`` gives that logger its one
stderr handler, so the callback server, the CLI and library callers
share the same output.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kepler_mcp_jira.config import Config

LOGGER_NAME = "kepler_mcp_jira"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_handler: logging.Handler | None = None


def _stderr_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(config: Config) -> None:
    """Attach the stderr handler to the package logger.

    Repeated calls keep the single handler and only move the level.

    Args:
        config: Application configuration containing log_level setting
    """
    global _handler

    level = getattr(logging, config.log_level.value)
    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.setLevel(level)

    if _handler is not None:
        _handler.setLevel(level)
        return

    package_logger.handlers.clear()
    _handler = _stderr_handler(level)
    package_logger.addHandler(_handler)
    # stdout may carry protocol traffic for the outer server
    package_logger.propagate = False

    package_logger.debug("Logging configured with level %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Get a logger inside the package namespace.

    Names already under ``kepler_mcp_jira.`` are used as is; anything else
    is nested beneath the package logger.
    """
    if name == LOGGER_NAME or name.startswith(f"{LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Drop the handler so tests can configure logging from scratch."""
    global _handler
    logging.getLogger(LOGGER_NAME).handlers.clear()
    _handler = None
