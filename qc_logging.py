"""
Logging configuration for QC Records.

Provides consistent log formatting across all modules.
"""

import logging
import sys
from typing import Dict

_loggers: Dict[str, logging.Logger] = {}

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Get a configured logger for a module.

    Args:
        name: Logger name (e.g., 'qc.app', 'qc.reports')
        level: Logging level (default: INFO)

    Returns:
        Configured logger
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)

    _loggers[name] = logger
    return logger


def set_level(level_name: str) -> None:
    """Apply a level name like 'DEBUG' to every logger handed out so far."""
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    for logger in _loggers.values():
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)
