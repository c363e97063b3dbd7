"""
Retry Logic with Exponential Backoff

Wraps fallible provider calls with bounded, strictly sequential retries.
Delay before attempt n+1 is min(initial_delay * factor ** (n - 1), max_delay).
"""
import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

import structlog
import tenacity

from costlens.shared.core.config import Settings
from costlens.shared.core.exceptions import is_retryable_error

logger = structlog.get_logger()
T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """Bounded exponential backoff for async operations."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        factor: float = 2.0,
        max_delay: float = 30.0,
        should_retry: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Optional[SleepFn] = None,
        operation_name: str = "default",
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.factor = factor
        self.max_delay = max_delay
        self.should_retry = should_retry
        self.operation_name = operation_name
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: object) -> "RetryPolicy":
        params: dict[str, object] = {
            "max_attempts": settings.RETRY_MAX_ATTEMPTS,
            "initial_delay": settings.RETRY_INITIAL_DELAY_SECONDS,
            "factor": settings.RETRY_BACKOFF_FACTOR,
            "max_delay": settings.RETRY_MAX_DELAY_SECONDS,
        }
        params.update(overrides)
        return cls(**params)  # type: ignore[arg-type]

    def backoff_delay(self, attempt: int) -> float:
        """Delay (seconds) slept after failed attempt number `attempt` (1-based)."""
        return min(self.initial_delay * (self.factor ** (attempt - 1)), self.max_delay)

    def _before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else None
        logger.warning(
            "retry_attempt_failed",
            operation=self.operation_name,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_seconds=wait,
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    def _retrying(self) -> tenacity.AsyncRetrying:
        return tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(self.max_attempts),
            wait=lambda retry_state: self.backoff_delay(retry_state.attempt_number),
            retry=tenacity.retry_if_exception(self.should_retry),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` until it succeeds, the attempts run out, or
        `should_retry` rejects the error. The last error propagates unchanged.
        """
        async for attempt in self._retrying():
            with attempt:
                result = await operation()
            outcome = attempt.retry_state.outcome
            if outcome is None or outcome.failed:
                continue
            if attempt.retry_state.attempt_number > 1:
                logger.info(
                    "operation_succeeded_after_retry",
                    operation=self.operation_name,
                    attempt=attempt.retry_state.attempt_number,
                )
            return result
        raise RuntimeError("Unexpected retry exhaustion")  # pragma: no cover
