"""
Logging helpers for RoleMatrix.

Modules obtain a logger with ``log = get_logger(__name__)``.  The package
itself only installs a ``NullHandler``; host applications decide where
records go, or call ``configure_logging()`` for a simple stream handler.
"""

from __future__ import annotations

import logging

_ROOT = "rolematrix"
_FORMAT = "%(levelname)s : %(asctime)s | %(name)s  | %(message)s"

logging.getLogger(_ROOT).addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under ``rolematrix``."""
    if name != _ROOT and not name.startswith(_ROOT + "."):
        name = f"{_ROOT}.{name}"
    return logging.getLogger(name)


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a stream handler to the package logger (idempotent).

    Args:
        level: Level name or number applied to the package logger.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(_ROOT)
    logger.setLevel(level.upper() if isinstance(level, str) else level)

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
    return logger
