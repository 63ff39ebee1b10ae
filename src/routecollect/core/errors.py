"""
Routecollect error hierarchy.

Every error raised by the scheduler core extends :class:`RouteCollectError`
so callers get the same metadata everywhere: a category for routing alerts,
an explicit retry flag, and an optional chained cause.

Manifesto:
    A scheduler that runs unattended for months must tell apart the failures
    it can absorb from the ones a human has to look at.

    - **Explicit retry semantics:** every error knows whether it is retryable
    - **Single base class:** one ``except RouteCollectError`` catches them all
    - **Serialisable:** ``to_dict()`` feeds structured logs and run events

Architecture:
    ::

        RouteCollectError
          ├── ScheduleError             (VALIDATION, rejected at registration)
          ├── DuplicateOccurrenceError  (INTERNAL, rejected at queue insert)
          ├── ExecutorFailure           (EXECUTION, retryable flag decides)
          │     ├── RetryableExecutorError
          │     └── FatalExecutorError
          ├── OverrunError              (SCHEDULING, staleness exceeded)
          ├── InterruptedRunError       (SCHEDULING, truncated by shutdown)
          ├── SchedulerCrashedError     (INTERNAL, coordinating loop died)
          └── ConfigError               (CONFIG)

Tags:
    errors, exceptions, retry-logic, routecollect

Doc-Types:
    api-reference
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for classification and retry heuristics."""

    NETWORK = "NETWORK"
    EXECUTION = "EXECUTION"
    SCHEDULING = "SCHEDULING"
    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


class RouteCollectError(Exception):
    """Base exception for all routecollect errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can
    be overridden per instance.

    Example:
        >>> err = RouteCollectError("boom", retryable=True)
        >>> err.to_dict()["retryable"]
        True
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        cause: Exception | None = None,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.cause = cause
        self.details = details

        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = {k: str(v) for k, v in self.details.items()}
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# SCHEDULING ERRORS
# =============================================================================


class ScheduleError(RouteCollectError):
    """Invalid schedule definition, or a registration/cancellation that cannot be applied."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str, *, schedule_id: str | None = None, field: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.schedule_id = schedule_id
        self.field = field


class DuplicateOccurrenceError(RouteCollectError):
    """An occurrence with the same (schedule_id, due_at) is already queued.

    This is a logic error in the caller; duplicates are rejected, never merged.
    """

    default_category = ErrorCategory.INTERNAL

    def __init__(self, schedule_id: str, due_at: Any):
        super().__init__(f"Occurrence already queued: {schedule_id} @ {due_at}")
        self.schedule_id = schedule_id
        self.due_at = due_at


class OverrunError(RouteCollectError):
    """The occurrence went stale before a worker could run it."""

    default_category = ErrorCategory.SCHEDULING


class InterruptedRunError(RouteCollectError):
    """Shutdown truncated a run before it finished."""

    default_category = ErrorCategory.SCHEDULING


class SchedulerCrashedError(RouteCollectError):
    """The coordinating loop itself failed; the scheduler is no longer running."""

    default_category = ErrorCategory.INTERNAL


class ConfigError(RouteCollectError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# EXECUTOR ERRORS
# =============================================================================


class ExecutorFailure(RouteCollectError):
    """Failure reported by a task executor.

    The ``retryable`` flag decides whether the dispatcher retries the
    occurrence (subject to the attempt limit and staleness threshold).
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = True


class RetryableExecutorError(ExecutorFailure):
    """Transient executor failure (network blip, upstream 5xx, rate limit)."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class FatalExecutorError(ExecutorFailure):
    """Non-recoverable executor failure; never retried."""

    default_retryable = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RouteCollectError):
        return error.retryable
    # Builtin TimeoutError and the connection errors are OSError subclasses
    retryable_types = (
        ConnectionError,
        BrokenPipeError,
        OSError,
    )
    return isinstance(error, retryable_types)


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, RouteCollectError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "RouteCollectError",
    "ScheduleError",
    "DuplicateOccurrenceError",
    "OverrunError",
    "InterruptedRunError",
    "SchedulerCrashedError",
    "ConfigError",
    "ExecutorFailure",
    "RetryableExecutorError",
    "FatalExecutorError",
    "is_retryable",
    "categorize_error",
]
