"""Structured logging setup shared by the API, services and scripts."""
from __future__ import annotations

from logging.config import dictConfig

import structlog
import structlog.types
from structlog.contextvars import merge_contextvars
from structlog.stdlib import BoundLogger
from structlog.stdlib import get_logger as get_structlog_logger


def configure_logging(level: str = "INFO", *, json: bool = True) -> None:
    """Route structlog events through stdlib logging with a single handler."""

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(colors=False)
    )
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processor": renderer,
                }
            },
            "handlers": {
                "default": {
                    "level": level.upper(),
                    "class": "logging.StreamHandler",
                    "formatter": "structlog",
                }
            },
            "loggers": {
                "": {"handlers": ["default"], "level": level.upper()},
                "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
            },
        }
    )

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> BoundLogger:
    """Helper returning a structured logger bound to *name*."""
    return get_structlog_logger(name)
