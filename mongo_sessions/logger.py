from __future__ import annotations

import logging

from .settings import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def get_logger(name: str = "mongo_sessions") -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["LOG_FORMAT", "setup_logging", "get_logger"]
