"""Bounded retry with exponential backoff.

Network-facing steps (cache requests, registry pushes) and transient nix
failures share one retry policy built on tenacity. Only exceptions matching
the caller's predicate are retried; everything else propagates on the first
attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one kind of operation.

    Attributes:
        max_attempts: Total attempts including the first one.
        backoff_base: Delay before the second attempt, doubled afterwards.
        backoff_cap: Upper bound on any single delay.
    """

    max_attempts: int = 4
    backoff_base: float = 1.0
    backoff_cap: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base,
            backoff_cap=settings.backoff_cap,
        )


class ExponentialBackoff(wait_base):
    """Deterministic doubling backoff: base, 2*base, 4*base, ... capped."""

    def __init__(self, *, base: float, cap: float) -> None:
        self._base = float(base)
        self._cap = float(cap)

    def __call__(self, retry_state: RetryCallState) -> float:
        n = retry_state.attempt_number
        return min(self._cap, self._base * (2 ** (n - 1)))


class RetriesExhausted(Exception):
    """Raised when a retryable operation failed on every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


def call_with_retries(
    fn: Callable[[], T],
    *,
    operation: str,
    is_retryable: Callable[[BaseException], bool],
    policy: RetryPolicy,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Call `fn` until it succeeds, a non-retryable error occurs, or the budget runs out.

    Args:
        fn: Zero-argument callable performing one attempt.
        operation: Human-readable operation name for logs and errors.
        is_retryable: Predicate selecting exceptions worth another attempt.
        policy: Attempt count and backoff parameters.
        sleep: Optional sleep function (tests pass a no-op).

    Returns:
        The value returned by the first successful attempt.

    Raises:
        RetriesExhausted: If every attempt raised a retryable error.
        Exception: Any non-retryable error from `fn`, unchanged.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d/%d), retrying in %.1fs: %s",
            operation,
            retry_state.attempt_number,
            policy.max_attempts,
            delay,
            exc,
        )

    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=ExponentialBackoff(base=policy.backoff_base, cap=policy.backoff_cap),
        retry=retry_if_exception(is_retryable),
        reraise=False,
        before_sleep=_before_sleep,
        **kwargs,
    )

    try:
        return retrying(fn)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise RetriesExhausted(
            operation,
            e.last_attempt.attempt_number,
            last or Exception("unknown error"),
        ) from last


__all__ = [
    "ExponentialBackoff",
    "RetriesExhausted",
    "RetryPolicy",
    "call_with_retries",
]
