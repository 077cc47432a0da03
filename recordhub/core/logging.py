"""
Structured logging for the record service.

All ``recordhub`` loggers share one stdout handler and do not propagate, so
running under uvicorn (which configures the root logger) never prints a
line twice.
"""
from __future__ import annotations

import logging
import sys
from functools import lru_cache

from recordhub.core.config import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@lru_cache
def _stdout_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    handler = _stdout_handler()
    if handler not in logger.handlers:
        logger.addHandler(handler)
    logger.propagate = False
    logger.setLevel(getattr(logging, get_settings().log_level.upper(), logging.INFO))
    return logger
