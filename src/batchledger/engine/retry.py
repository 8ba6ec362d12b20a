"""Bounded retries with tenacity.

The execution engine retries in two places:
- each classification call, on transient ClassifierErrors
- each checkpoint commit, on database errors

Backoff is exponential with jitter and capped at ``max_delay``. Only errors
the caller's predicate accepts are retried; anything else propagates on the
first attempt. Exhaustion surfaces as MaxRetriesExceeded carrying the attempt
count, which ends up on the item's result.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

if TYPE_CHECKING:
    from batchledger.core.config import RetrySettings

T = TypeVar("T")

OnRetry = Callable[[int, BaseException], None]


class MaxRetriesExceeded(Exception):
    """Every allowed attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy.

    max_attempts counts every try, the first included: 3 means one call and
    up to two retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    jitter: float = 1.0  # seconds
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter_seconds,
            exponential_base=settings.exponential_base,
        )

    def wait_strategy(self) -> wait_exponential_jitter:
        return wait_exponential_jitter(
            initial=self.base_delay,
            max=self.max_delay,
            exp_base=self.exponential_base,
            jitter=self.jitter,
        )


def _before_sleep(on_retry: OnRetry) -> Callable[[RetryCallState], None]:
    """Adapt an (attempt, error) callback to tenacity's before_sleep hook."""

    def hook(state: RetryCallState) -> None:
        assert state.outcome is not None
        error = state.outcome.exception()
        assert error is not None
        on_retry(state.attempt_number, error)

    return hook


class RetryManager:
    """Runs an operation under a RetryConfig.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=3))

        answer = manager.execute_with_retry(
            lambda: classifier.classify(text, timeout=30.0),
            is_retryable=lambda e: isinstance(e, ClassifierError) and e.retryable,
            on_retry=lambda attempt, error: logger.warning("classify_retry", attempt=attempt),
        )
    """

    def __init__(self, config: RetryConfig, *, sleep: Callable[[float], None] = time.sleep) -> None:
        """
        Args:
            config: Retry policy
            sleep: Called with each backoff delay (tests pass a no-op)
        """
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool],
        on_retry: OnRetry | None = None,
    ) -> T:
        """Call operation until it succeeds, fails non-retryably, or attempts run out.

        on_retry is called only before an attempt that will actually happen,
        never after the last one.

        Raises:
            MaxRetriesExceeded: If every attempt failed with a retryable error
            Exception: The first non-retryable error, unchanged
        """
        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=self._config.wait_strategy(),
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=_before_sleep(on_retry) if on_retry is not None else None,
            reraise=False,
        )
        try:
            return retrying(operation)
        except RetryError as e:
            last = e.last_attempt
            error = last.exception()
            assert error is not None, "RetryError without exception is impossible"
            raise MaxRetriesExceeded(last.attempt_number, error) from e
