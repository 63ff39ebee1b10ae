"""Retry strategies with exponential backoff, bounded by staleness.

A retryable executor failure is retried up to a fixed attempt limit, with
backoff between attempts, but only while the retry would still land before
the occurrence's staleness deadline. Traffic data for 2:25pm queried at
2:40pm is no longer the measurement that was asked for.

Example:
    >>> policy = RetryPolicy(ExponentialBackoff(base_delay=1.0, jitter=False), max_attempts=3)
    >>> policy.decide(attempts=1, failed_at=now, deadline=now + timedelta(minutes=5))
    RetryDecision(retry=True, delay=1.0, reason=None)
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta

RETRY_EXHAUSTED = "retry-exhausted"
RETRY_PAST_STALENESS = "retry-past-staleness"
NOT_RETRYABLE = "not-retryable"


class RetryStrategy(ABC):
    """Abstract base for backoff strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)

        Returns:
            Delay in seconds
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, min(delay, self.max_delay))

        return delay


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class NoRetry(RetryStrategy):
    """No delay; pair with ``max_attempts=1`` to disable retries."""

    def next_delay(self, attempt: int) -> float:
        return 0.0


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of :meth:`RetryPolicy.decide`."""

    retry: bool
    delay: float = 0.0
    reason: str | None = None


@dataclass
class RetryPolicy:
    """Attempt limit plus backoff, checked against the staleness deadline."""

    strategy: RetryStrategy
    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def decide(self, attempts: int, failed_at: datetime, deadline: datetime) -> RetryDecision:
        """Decide whether to retry after *attempts* attempts have failed.

        Args:
            attempts: Number of attempts made so far (>= 1)
            failed_at: When the last attempt failed
            deadline: Latest instant at which a retry may start
        """
        if attempts >= self.max_attempts:
            return RetryDecision(retry=False, reason=RETRY_EXHAUSTED)

        delay = self.strategy.next_delay(attempts - 1)
        if failed_at + timedelta(seconds=delay) > deadline:
            return RetryDecision(retry=False, delay=delay, reason=RETRY_PAST_STALENESS)
        return RetryDecision(retry=True, delay=delay)

    @classmethod
    def never(cls) -> RetryPolicy:
        return cls(strategy=NoRetry(), max_attempts=1)
