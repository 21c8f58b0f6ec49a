"""Metis Core -- shared primitives used by every engine layer.

Architecture::

    errors.py       Structured error hierarchy (MetisError and subclasses)
    result.py       Result[T] envelope (Ok / Err)
    logging.py      structlog configuration and LogContext
    settings.py     EngineSettings (pydantic-settings, METIS_ prefix)
    timestamps.py   Object-id generation + UTC helpers (stdlib-only)
"""

from metis_core.core.errors import (
    ClaimLostError,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    ExecutionAlreadyExistsError,
    ExecutionCancelled,
    ExternalTaskError,
    ExternalTaskHardError,
    ExternalTaskTransientError,
    InvalidTransitionError,
    MetisError,
    NoWorkflowExecutionFoundError,
    OrchestrationError,
    PluginExecutionNotAllowed,
    RepositoryError,
    RepositoryTransientError,
    TaskDroppedError,
    TaskStalledError,
    is_retryable,
)
from metis_core.core.result import Err, Ok, Result

__all__ = [
    "ClaimLostError",
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionAlreadyExistsError",
    "ExecutionCancelled",
    "ExternalTaskError",
    "ExternalTaskHardError",
    "ExternalTaskTransientError",
    "InvalidTransitionError",
    "MetisError",
    "NoWorkflowExecutionFoundError",
    "OrchestrationError",
    "PluginExecutionNotAllowed",
    "RepositoryError",
    "RepositoryTransientError",
    "TaskDroppedError",
    "TaskStalledError",
    "is_retryable",
    "Err",
    "Ok",
    "Result",
]
