"""Logging setup for the lesson calendar package."""

from __future__ import annotations

import logging

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d %(message)s"


def setup_logger(level: str | int = logging.INFO, name: str = "lesson_calendar") -> logging.Logger:
    """Attach a stream handler to the package logger once and set its level.

    Modules log through ``logging.getLogger(__name__)`` and inherit this
    configuration.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)

    return logger
