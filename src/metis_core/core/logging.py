"""
Structured logging for the workflow engine.

Every module logs through ``get_logger(__name__)`` with dotted event names and
key/value fields. A worker binds ``execution_id`` and ``worker_id`` around one
executor run with :class:`LogContext`, so every line emitted while driving
that execution carries them.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="metis-core")
            │
            ▼
        structlog processor chain:
          1. merge_contextvars       ← LogContext / bind_context
          2. add_log_level (logger_name is bound by get_logger)
          3. TimeStamper (iso, utc)
          4. _add_engine_metadata    service.name, service.version
          5. JSON: ECS field names + JSONRenderer | tty: ConsoleRenderer

Examples:
    >>> from metis_core.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True)
    >>> logger = get_logger(__name__)
    >>> logger.info("executor.plugin_finished", plugin_type="OAIPMH_HARVEST")

Tags:
    logging, structlog, observability, metis-core
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from contextvars import Token
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from metis_core import __version__

_service_name = "metis-core"

# structlog key -> ECS key, applied to JSON output only
_ECS_FIELDS = {
    "timestamp": "@timestamp",
    "level": "log.level",
    "logger_name": "log.logger",
}


def _add_engine_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("service.name", _service_name)
    event_dict.setdefault("service.version", __version__)
    return event_dict


def _ecs_field_names(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    for key, ecs_key in _ECS_FIELDS.items():
        if key in event_dict:
            event_dict[ecs_key] = event_dict.pop(key)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "metis-core",
) -> None:
    """Configure structured logging for a worker or CLI process.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON lines, False for the console renderer,
            None to pick JSON whenever stdout is not a terminal
        service: Value of the ``service.name`` field
    """
    global _service_name
    _service_name = service

    numeric_level = getattr(logging, level.upper())
    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_engine_metadata,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if json_format:
        processors += [
            _ecs_field_names,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # SQLAlchemy and httpx log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Get a structlog logger (usually ``get_logger(__name__)``)."""
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(logger_name=name)


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind log fields for one block, restoring the previous values on exit.

    Nested contexts for the same key (an executor run inside a worker scope)
    unwind correctly. Enter and exit must happen in the same task.

    Example:
        async with LogContext(execution_id=execution.id, worker_id=worker_id):
            logger.info("executor.started")
    """

    def __init__(self, **fields: Any):
        self._fields = fields
        self._tokens: Mapping[str, Token[Any]] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, *exc_info: object) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
        self._tokens = {}

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *exc_info: object) -> None:
        self.__exit__(*exc_info)


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
