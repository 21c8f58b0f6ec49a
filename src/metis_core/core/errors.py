"""
Structured error types for the workflow engine.

Every failure the engine reasons about is a :class:`MetisError` subclass that
carries a category, an explicit retry flag and structured context. Callers
decide on retries and on what ends up in a plugin's ``failMessage`` by
inspecting these attributes, never by parsing messages.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                         MetisError                               │
        │      (category, retryable, retry_after, context, cause)          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ExternalTaskError          RepositoryError      ConfigError     │
        │  (EXTERNAL_TASK)            (DATABASE)           (CONFIG)        │
        │       │                          │                               │
        │  ExternalTaskTransientError  RepositoryTransientError            │
        │  ExternalTaskHardError       ClaimLostError                      │
        │  TaskDroppedError                                                │
        │  TaskStalledError                                                │
        │                                                                  │
        │  OrchestrationError                                              │
        │  (ORCHESTRATION)                                                 │
        │       │                                                          │
        │  PluginExecutionNotAllowed   ExecutionCancelled                  │
        │  NoWorkflowExecutionFoundError  ExecutionAlreadyExistsError      │
        │                                                                  │
        │  InvalidTransitionError (INTERNAL)                               │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Raise a bare Exception from engine code
    ✅ DO: Use the subclass matching the failure and pass ``cause=``

    ❌ DON'T: Mark an execution FAILED on repository or claim errors
    ✅ DO: Abort the step and let stale-claim reclamation retry it

Tags:
    error-handling, exception-hierarchy, retry-logic, metis-core
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"           # Connection, timeout, upstream 5xx
    DATABASE = "DATABASE"         # Repository reads/writes

    # External processing errors
    EXTERNAL_TASK = "EXTERNAL_TASK"  # DPS rejected, dropped or stalled a task

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"

    # Application errors
    ORCHESTRATION = "ORCHESTRATION"  # Claims, chain policy, cancellation

    # Internal errors
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        execution_id: Workflow execution identifier
        dataset_id: Dataset the execution belongs to
        plugin_type: Plugin type name, if the error concerns one plugin
        external_task_id: DPS task identifier
        worker_id: Worker that observed the error
        http_status: HTTP status code returned by an upstream service
        metadata: Additional key-value pairs
    """

    execution_id: str | None = None
    dataset_id: str | None = None
    plugin_type: str | None = None
    external_task_id: str | None = None
    worker_id: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["execution_id", "dataset_id", "plugin_type", "external_task_id",
                    "worker_id", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class MetisError(Exception):
    """
    Base exception for all engine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    creating an error at a call site needs only a message (and usually a
    ``cause``).

    Examples:
        >>> error = MetisError("Something went wrong")
        >>> error.retryable
        False
        >>> error.with_context(execution_id="65a0f1c2e4b0a1b2c3d4e5f6").context.execution_id
        '65a0f1c2e4b0a1b2c3d4e5f6'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> MetisError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ExternalTaskHardError("Rejected").with_context(
                execution_id=execution.id,
                plugin_type="TRANSFORMATION",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.context:
            context_dict = self.context.to_dict()
            if context_dict:
                result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# EXTERNAL TASK ERRORS (DPS)
# =============================================================================


class ExternalTaskError(MetisError):
    """A DPS call failed or the DPS reported a failed task."""

    default_category = ErrorCategory.EXTERNAL_TASK


class ExternalTaskTransientError(ExternalTaskError):
    """
    Upstream 5xx or connection failure.

    Retried by the driver; while retrying, the plugin sits in PENDING.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True

    def __init__(self, message: str, *, http_status: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.http_status = http_status
        if http_status is not None:
            self.context.http_status = http_status


class ExternalTaskHardError(ExternalTaskError):
    """Upstream 4xx, invalid task, or retry budget exhausted."""

    def __init__(self, message: str, *, http_status: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.http_status = http_status
        if http_status is not None:
            self.context.http_status = http_status


class TaskDroppedError(ExternalTaskError):
    """The DPS reported the task as DROPPED."""


class TaskStalledError(ExternalTaskError):
    """No processed-record progress within the stall threshold."""


# =============================================================================
# PERSISTENCE ERRORS
# =============================================================================


class RepositoryError(MetisError):
    """Persistence read or write failed."""

    default_category = ErrorCategory.DATABASE


class RepositoryTransientError(RepositoryError):
    """Persistence failure that may succeed on retry."""

    default_retryable = True


class ClaimLostError(RepositoryError):
    """The worker's claim on an execution is no longer valid."""

    default_category = ErrorCategory.ORCHESTRATION

    def __init__(self, execution_id: str, worker_id: str | None = None):
        super().__init__(
            f"Claim on execution {execution_id} lost by worker {worker_id}",
            context=ErrorContext(execution_id=execution_id, worker_id=worker_id),
        )
        self.execution_id = execution_id
        self.worker_id = worker_id


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(MetisError):
    """Workflow orchestration error."""

    default_category = ErrorCategory.ORCHESTRATION


class PluginExecutionNotAllowed(OrchestrationError):
    """No valid predecessor exists for a non-harvest plugin, or the plugin order is invalid."""


class ExecutionCancelled(OrchestrationError):
    """The execution was cancelled by a user or by the system."""

    def __init__(self, execution_id: str, cancelled_by: str | None):
        super().__init__(
            f"Execution {execution_id} cancelled by {cancelled_by}",
            context=ErrorContext(execution_id=execution_id),
        )
        self.cancelled_by = cancelled_by


class NoWorkflowExecutionFoundError(OrchestrationError):
    """No execution exists with the given identifier."""


class ExecutionAlreadyExistsError(OrchestrationError):
    """The dataset already has a queued or running execution."""


# =============================================================================
# CONFIG / INTERNAL
# =============================================================================


class ConfigError(MetisError):
    """Invalid engine configuration."""

    default_category = ErrorCategory.CONFIG


class InvalidTransitionError(MetisError, ValueError):
    """
    Raised when an illegal status transition is attempted.

    Transition validation is strict. If a legitimate transition is blocked,
    add it to the transition table explicitly.
    """

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable (non-engine errors are not)."""
    if isinstance(error, MetisError):
        return error.retryable
    return False


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "MetisError",
    "ExternalTaskError",
    "ExternalTaskTransientError",
    "ExternalTaskHardError",
    "TaskDroppedError",
    "TaskStalledError",
    "RepositoryError",
    "RepositoryTransientError",
    "ClaimLostError",
    "OrchestrationError",
    "PluginExecutionNotAllowed",
    "ExecutionCancelled",
    "NoWorkflowExecutionFoundError",
    "ExecutionAlreadyExistsError",
    "ConfigError",
    "InvalidTransitionError",
    "is_retryable",
]
