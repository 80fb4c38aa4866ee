"""Structured logging utilities."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from gym_sniper.utils.config import ConfigError, get_settings


_LOGGER_INITIALIZED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure process-wide logging once.

    An explicit level (from the CLI) wins over the settings default and may
    be applied after loggers were already handed out.
    """

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        if level:
            logging.getLogger().setLevel(level.upper())
        return

    try:
        default_level = get_settings().log_level
    except ConfigError:
        # Reported by the entry point; logging still has to come up first.
        default_level = "INFO"
    resolved_level = (level or default_level).upper()

    logging.basicConfig(
        level=resolved_level,
        format=(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        ),
        stream=sys.stdout,
    )
    # urllib3 logs every connection at DEBUG.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for the requested module."""
    configure_logging()
    return logging.getLogger(name)
