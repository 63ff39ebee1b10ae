"""Platform pieces shared by the scheduler: errors, logging, settings."""

from routecollect.core.errors import (
    ConfigError,
    DuplicateOccurrenceError,
    ErrorCategory,
    ExecutorFailure,
    FatalExecutorError,
    InterruptedRunError,
    OverrunError,
    RetryableExecutorError,
    RouteCollectError,
    ScheduleError,
    SchedulerCrashedError,
    categorize_error,
    is_retryable,
)
from routecollect.core.logging import LogContext, configure_logging, get_logger
from routecollect.core.settings import SchedulerSettings

__all__ = [
    "ConfigError",
    "DuplicateOccurrenceError",
    "ErrorCategory",
    "ExecutorFailure",
    "FatalExecutorError",
    "InterruptedRunError",
    "OverrunError",
    "RetryableExecutorError",
    "RouteCollectError",
    "ScheduleError",
    "SchedulerCrashedError",
    "categorize_error",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "get_logger",
    "SchedulerSettings",
]
