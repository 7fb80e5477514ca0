"""
Error taxonomy and the Result type for explicit error handling.

Nothing in the ingestion path raises to its caller: expected failures travel
as ``Result`` values or are logged and dropped. The exception classes below
name the three failure families the engine distinguishes.
"""

from typing import Generic, TypeVar

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class DetectionEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationAbsent(DetectionEngineError):
    """No baseline or no assignment: detection is disabled, never guessed."""


class TransientCollaboratorFailure(DetectionEngineError):
    """An alert/audit sink timed out or failed. Logged and dropped."""


class InvariantViolation(DetectionEngineError):
    """Data-integrity bug such as two active sessions for one user."""


class AssignmentConflict(DetectionEngineError):
    """A compare-and-swap write lost to a concurrent writer too many times."""


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Why: Makes error paths visible in type system, forces handling decisions.
    When to use: When failure is expected business logic, not exceptional.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error

    def __repr__(self) -> str:
        if self.is_ok():
            return f"Result.ok({self._value!r})"
        return f"Result.err({self._error!r})"
