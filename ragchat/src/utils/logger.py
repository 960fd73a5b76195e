"""
RagChat - Logging
==================
``get_logger(__name__)`` hands every module a logger that writes one
line per record to stdout:

    2024-05-01 12:00:00 | INFO     | ragchat.src.core.rag_engine | [RAG] ...

The level comes from ``settings.ENV`` (``dev`` is DEBUG, ``prod`` is
WARNING).  While settings cannot be loaded, for instance when the API key
is missing and startup is about to abort, the level is INFO so the
configuration error still gets printed.

Messages carry a subsystem tag: ``[RAG]``, ``[MEMORY]``, ``[STREAM]``
or ``[INDEX]``.
"""

from __future__ import annotations

import logging
import sys
from functools import lru_cache

from ragchat.src.core.exceptions import ConfigurationError

LEVELS_BY_ENV = {"dev": logging.DEBUG, "prod": logging.WARNING}

LINE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@lru_cache(maxsize=1)
def level_for_env() -> int:
    """Level for new loggers, resolved once per process."""
    from ragchat.config.settings import get_settings

    try:
        return LEVELS_BY_ENV.get(get_settings().ENV, logging.INFO)
    except ConfigurationError:
        return logging.INFO


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """Named stdout logger; ``level`` overrides the ENV-derived one on first creation."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    if level is None:
        level = level_for_env()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LINE_FORMAT, TIME_FORMAT))
    handler.setLevel(level)

    logger.addHandler(handler)
    logger.setLevel(level)
    # one handler per logger; the root logger would print it twice
    logger.propagate = False
    return logger
