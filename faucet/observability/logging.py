"""
Structured Logging with Structlog.

Every entry carries the service, version and storage backend. Worker and
pipeline code binds request_id / worker_id through log_context.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from faucet.config import settings

# Driver loggers that are chatty at INFO
_DRIVER_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "pymongo", "asyncio")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add service identity and storage backend to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.service_version
    event_dict["backend"] = settings.storage_backend
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structlog for the worker and report processes.

    JSON entries look like:
    {
        "event": "mint_completed",
        "level": "info",
        "timestamp": "2026-10-17T12:00:00.123456Z",
        "logger": "faucet.services.pipeline",
        "service": "faucet",
        "version": "0.1.0",
        "backend": "postgres",
        "request_id": "...",
        "worker_id": 0,
        ...
    }

    Driver loggers stay at WARNING unless the level is DEBUG.
    """
    level = (log_level or settings.log_level).upper()
    renderer_format = log_format or settings.log_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level),
    )
    driver_level = logging.DEBUG if level == "DEBUG" else logging.WARNING
    for name in _DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(driver_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.ExceptionRenderer()
        if level == "DEBUG"
        else structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
        if renderer_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class log_context:
    """
    Bind structured logging context for a block.

    Nested blocks restore the outer values on exit.

    Usage:
        with log_context(request_id=str(request.id), worker_id=worker_id):
            logger.info("mint_request_claimed")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> None:
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
