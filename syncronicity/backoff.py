"""Retry eligibility and delay for classified read-path failures."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

from google.api_core import exceptions as gexc
from tenacity import RetryCallState


class ErrorClass(str, Enum):
    """gRPC status names the read path distinguishes."""

    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    UNAVAILABLE = "UNAVAILABLE"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    CANCELLED = "CANCELLED"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


_EXCEPTION_CLASSES: tuple[tuple[type[Exception], ErrorClass], ...] = (
    (gexc.DeadlineExceeded, ErrorClass.DEADLINE_EXCEEDED),
    (gexc.ServiceUnavailable, ErrorClass.UNAVAILABLE),
    (gexc.Unauthenticated, ErrorClass.UNAUTHENTICATED),
    (gexc.PermissionDenied, ErrorClass.PERMISSION_DENIED),
    (gexc.NotFound, ErrorClass.NOT_FOUND),
    (gexc.InvalidArgument, ErrorClass.INVALID_ARGUMENT),
    (gexc.ResourceExhausted, ErrorClass.RESOURCE_EXHAUSTED),
    (gexc.Cancelled, ErrorClass.CANCELLED),
    (gexc.InternalServerError, ErrorClass.INTERNAL),
)

DEFAULT_RETRYABLE = frozenset({ErrorClass.DEADLINE_EXCEEDED, ErrorClass.UNAVAILABLE})


def classify_error(exc: BaseException) -> ErrorClass:
    """Map a client exception to its error class. Unrecognised errors are UNKNOWN."""
    for exc_type, error_class in _EXCEPTION_CLASSES:
        if isinstance(exc, exc_type):
            return error_class
    return ErrorClass.UNKNOWN


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``initial_delay * multiplier ** (attempt - 1)`` capped at ``max_delay``.

    ``attempt`` is the 1-based number of the attempt that just failed.
    """

    initial_delay: float = 0.1
    multiplier: float = 1.3
    max_delay: float = 60.0
    max_attempts: int = 10
    retryable: frozenset = field(default=DEFAULT_RETRYABLE)

    def __post_init__(self):
        if self.initial_delay <= 0 or self.max_delay <= 0:
            raise ValueError("Backoff delays must be positive")
        if self.multiplier < 1.0:
            raise ValueError("Backoff multiplier must be >= 1.0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def is_retryable(self, error_class: ErrorClass) -> bool:
        return error_class in self.retryable

    def delay_for(self, attempt: int) -> float:
        exponent = max(attempt, 1) - 1
        # Stop multiplying once past the cap so large attempts cannot overflow.
        delay = self.initial_delay
        for _ in range(exponent):
            delay *= self.multiplier
            if delay >= self.max_delay:
                return self.max_delay
        return min(delay, self.max_delay)

    def should_retry(self, error_class: ErrorClass, attempt: int) -> RetryDecision:
        if not self.is_retryable(error_class) or attempt >= self.max_attempts:
            return RetryDecision(retry=False, delay=0.0)
        return RetryDecision(retry=True, delay=self.delay_for(attempt))


def delays(policy: BackoffPolicy, error_class: ErrorClass = ErrorClass.UNAVAILABLE) -> Iterator[float]:
    """Yield the delay before every retry the policy allows for ``error_class``."""
    attempt = 1
    while True:
        decision = policy.should_retry(error_class, attempt)
        if not decision.retry:
            return
        yield decision.delay
        attempt += 1


def _decision(policy: BackoffPolicy, retry_state: RetryCallState) -> RetryDecision:
    outcome = retry_state.outcome
    if outcome is None or not outcome.failed:
        return RetryDecision(retry=False, delay=0.0)
    exc = outcome.exception()
    if not isinstance(exc, gexc.GoogleAPICallError):
        return RetryDecision(retry=False, delay=0.0)
    return policy.should_retry(classify_error(exc), retry_state.attempt_number)


def tenacity_retry(policy: BackoffPolicy):
    """tenacity ``retry`` callable driven by the policy."""

    def _retry(retry_state: RetryCallState) -> bool:
        return _decision(policy, retry_state).retry

    return _retry


def tenacity_wait(policy: BackoffPolicy):
    """tenacity ``wait`` callable driven by the policy."""

    def _wait(retry_state: RetryCallState) -> float:
        return _decision(policy, retry_state).delay

    return _wait


def log_retry(logger: logging.Logger, operation: str):
    """tenacity ``before_sleep`` callback logging each retry at WARNING."""

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Retrying {operation}",
            extra={
                "attempt": retry_state.attempt_number,
                "error_class": classify_error(exc).value if exc else None,
                "delay_s": round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
                "error": str(exc),
            },
        )

    return _before_sleep
