# src/railflow/engine/retry.py
"""RetryManager: bounded retry with tenacity.

Two retry shapes are used by the engine:
- execute_with_retry(): exception-driven, with backoff. Used by the web
  worker client to restart a dead worker process and resend a request.
- execute_until_accepted(): result-driven, no backoff. Used by turn nodes
  to re-request output that fails schema validation; the last result is
  returned when attempts run out.

Retries are never applied to node failures in general: users resubmit.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_exponential_jitter,
    wait_none,
)


T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Raised when max retry attempts are exceeded."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    max_attempts is the TOTAL number of tries, not the number of retries.
    So max_attempts=2 means: try, retry (2 total).
    """

    max_attempts: int = 2
    base_delay: float = 0.2  # seconds
    max_delay: float = 2.0  # seconds
    jitter: float = 0.1  # seconds

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_attempts=1)


class RetryManager:
    """Manages retry logic for async operations.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=2))

        result = await manager.execute_with_retry(
            operation=lambda: client.request("health", {}),
            is_retryable=is_recoverable_worker_error,
            on_retry=lambda attempt, error: client.restart(),
        )
    """

    def __init__(self, config: RetryConfig) -> None:
        self._config = config

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        is_retryable: Callable[[BaseException], bool],
        on_retry: Callable[[int, BaseException], Awaitable[None]] | None = None,
    ) -> T:
        """Execute operation with retry logic.

        Args:
            operation: Coroutine factory, called once per attempt
            is_retryable: Function to check if error is retryable
            on_retry: Optional coroutine run before the next attempt (attempt, error)

        Returns:
            Result of operation

        Raises:
            MaxRetriesExceeded: If max attempts exceeded
            Exception: If non-retryable error occurs
        """
        attempt = 0
        last_error: BaseException | None = None

        try:
            async for attempt_state in AsyncRetrying(
                stop=stop_after_attempt(self._config.max_attempts),
                wait=wait_exponential_jitter(
                    initial=self._config.base_delay,
                    max=self._config.max_delay,
                    jitter=self._config.jitter,
                ),
                retry=retry_if_exception(is_retryable),
                reraise=False,  # RetryError is converted to MaxRetriesExceeded below
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        return await operation()
                    except Exception as e:
                        last_error = e
                        if is_retryable(e) and on_retry and attempt < self._config.max_attempts:
                            await on_retry(attempt, e)
                        raise

        except RetryError as e:
            final_error = last_error or e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            raise MaxRetriesExceeded(attempt, final_error) from e

        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover


def _last_result(retry_state: RetryCallState) -> object:
    assert retry_state.outcome is not None
    return retry_state.outcome.result()


async def execute_until_accepted(
    operation: Callable[[int], Awaitable[T]],
    *,
    accept: Callable[[T], bool],
    max_attempts: int,
) -> T:
    """Call operation(attempt) until accept(result) or attempts run out.

    Exceptions from operation propagate immediately; only rejected results
    are retried. Returns the last result either way, so callers re-check
    accept() to tell success from exhaustion.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    result: T | None = None
    async for attempt_state in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_none(),
        retry=retry_if_result(lambda value: not accept(value)),
        retry_error_callback=_last_result,
        reraise=True,
    ):
        with attempt_state:
            result = await operation(attempt_state.retry_state.attempt_number)
        if not attempt_state.retry_state.outcome.failed:  # type: ignore[union-attr]  # outcome set on context exit
            attempt_state.retry_state.set_result(result)
    return result  # type: ignore[return-value]  # loop body runs at least once
