"""
Result[T] envelope for engine boundaries.

The plugin driver, the chain policy and the workflow factory return
``Ok(value)`` or ``Err(error)`` instead of raising for expected outcomes,
so the executor branches on kinds and keeps exceptions for the unexpected.

Examples:
    >>> from metis_core.core.result import Ok, Err, Result
    >>> def submitted(task_id: str | None) -> Result[str]:
    ...     if task_id is None:
    ...         return Err(ValueError("no task id"))
    ...     return Ok(task_id)
    >>> match submitted("42"):
    ...     case Ok(value):
    ...         print(f"Task: {value}")
    ...     case Err(error):
    ...         print(f"Error: {error}")
    Task: 42
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def map_err(self, f: Callable[[Exception], Exception]) -> Result[T]:
        return self


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed outcome carrying the error."""

    error: Exception

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the carried error."""
        raise self.error

    def map_err(self, f: Callable[[Exception], Exception]) -> Result[T]:
        """Replace the error, e.g. to attach execution context."""
        return Err(f(self.error))


Result = Ok[T] | Err[T]


__all__ = ["Ok", "Err", "Result"]
