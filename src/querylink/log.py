"""Structured logging setup and the logger collaborator."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from querylink.types import Logger


def configure_logging(level: str = "info", *, json: bool = False) -> None:
    """Configure structlog on top of stdlib logging.

    Applications call this once at startup; the library itself only emits
    events through ``structlog.get_logger(__name__)``.
    """
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )


def structlog_logger(name: str = "querylink.http") -> Logger:
    """Build a ``(level, message, meta)`` logger that forwards to structlog.

    Usage:
        http = HttpClient(base_url="https://api.example.com", logger=structlog_logger())
    """
    logger = structlog.get_logger(name)

    def emit(level: str, message: str, meta: Any = None) -> None:
        method = getattr(logger, level, logger.info)
        if isinstance(meta, BaseException):
            method(message, error=repr(meta))
        elif isinstance(meta, dict):
            method(message, **meta)
        elif meta is None:
            method(message)
        else:
            method(message, meta=meta)

    return emit
