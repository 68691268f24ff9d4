"""Retry and polling logic for transient Azure failures.

Two tools live here:

- retry_with_exponential_backoff: decorator used for read-only Azure CLI
  calls that may hit throttling or network blips.
- RetryPolicy: an injectable policy object (max attempts, backoff function,
  optional overall timeout, sleep and clock functions) used by the
  orchestrators for role assignment retries, role propagation polling and
  feature registration polling. Tests pass a fake sleep/clock so nothing
  actually waits.

Security:
- No credential leakage in logs (messages go through LogSanitizer)

Usage:
    policy = RetryPolicy(max_attempts=3, backoff=linear_backoff(5.0))
    policy.call(lambda: platform.create_role_assignment(...))

    poll = RetryPolicy(max_attempts=12, backoff=fixed_backoff(5.0))
    if not poll.poll(lambda: platform.role_definition_exists(name)):
        logger.warning("Role propagation timeout, continuing anyway...")
"""

import functools
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from vmdeploy.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

# Type variable for generic function wrapping
F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")

Backoff = Callable[[int], float]


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] = (TimeoutError, ConnectionError),
) -> Callable[[F], F]:
    """Decorator for retrying operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        jitter: Add random jitter to delays (default: True)
        retryable_exceptions: Tuple of exception types to retry

    Returns:
        Decorated function that will retry on transient failures
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 1:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt}/{max_attempts}"
                        )
                    return result

                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        logger.debug(
                            f"{func.__name__} failed after {max_attempts} attempts: "
                            f"{_safe_error_message(e)}"
                        )
                        raise

                    actual_delay = delay
                    if jitter:
                        # ±25% of delay
                        jitter_amount = delay * 0.25
                        actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)
                    actual_delay = min(actual_delay, max_delay)

                    logger.debug(
                        f"{func.__name__} failed on attempt {attempt}/{max_attempts}, "
                        f"retrying in {actual_delay:.2f}s: {_safe_error_message(e)}"
                    )
                    time.sleep(actual_delay)
                    delay *= 2

            raise RuntimeError(f"{func.__name__} failed with unknown error")

        return wrapper  # type: ignore

    return decorator


def linear_backoff(step: float) -> Backoff:
    """Backoff of attempt * step seconds (5s, 10s, 15s for step=5)."""
    return lambda attempt: attempt * step


def fixed_backoff(interval: float) -> Backoff:
    """Constant interval between attempts."""
    return lambda attempt: interval


@dataclass(frozen=True)
class RetryPolicy:
    """Injectable retry/poll policy.

    Attributes:
        max_attempts: Attempts before giving up (None = unbounded)
        backoff: Delay in seconds after the given (1-based) failed attempt
        timeout: Overall deadline in seconds measured with ``clock`` (None = none)
        sleep: Sleep function, replaced in tests
        clock: Monotonic clock, replaced in tests
    """

    max_attempts: int | None = 3
    backoff: Backoff = field(default=fixed_backoff(5.0))
    timeout: float | None = None
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def _attempts(self):
        attempt = 1
        while self.max_attempts is None or attempt <= self.max_attempts:
            yield attempt
            attempt += 1

    def _is_last(self, attempt: int, started: float) -> bool:
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return True
        if self.timeout is not None:
            elapsed = self.clock() - started
            return elapsed + self.backoff(attempt) > self.timeout
        return False

    def call(
        self,
        func: Callable[[], T],
        *,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Call ``func`` until it succeeds or the policy is exhausted.

        Raises:
            The last exception raised by ``func`` once attempts run out.
        """
        started = self.clock()
        for attempt in self._attempts():
            try:
                return func()
            except retry_on as e:
                if self._is_last(attempt, started):
                    raise
                delay = self.backoff(attempt)
                logger.debug(
                    f"Attempt {attempt} failed, retrying in {delay:.0f}s: "
                    f"{_safe_error_message(e)}"
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                self.sleep(delay)
        raise RuntimeError("retry policy exhausted without an attempt")

    def poll(
        self,
        predicate: Callable[[], bool],
        *,
        on_wait: Callable[[int], None] | None = None,
    ) -> bool:
        """Evaluate ``predicate`` until it returns True.

        Returns:
            True once the predicate holds, False if attempts or timeout ran out.
        """
        started = self.clock()
        for attempt in self._attempts():
            if predicate():
                return True
            if self._is_last(attempt, started):
                return False
            if on_wait is not None:
                on_wait(attempt)
            self.sleep(self.backoff(attempt))
        return False


def _safe_error_message(exception: BaseException) -> str:
    """Create safe error message without leaking credentials."""
    error_str = LogSanitizer.sanitize(str(exception))
    if len(error_str) > 200:
        error_str = error_str[:200] + "..."
    return error_str


__all__ = [
    "Backoff",
    "RetryPolicy",
    "fixed_backoff",
    "linear_backoff",
    "retry_with_exponential_backoff",
]
