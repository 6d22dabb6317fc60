"""
Retry policy wrapping fetcher invocations.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from .config import RetrySettings
from .errors import TransientFetchError
from .logging import get_logger

DEFAULT_TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    TransientFetchError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.05,
                 max_delay: float = 2.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryConfig":
        """Build a config from millisecond-based settings."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_ms / 1000.0,
            max_delay=settings.max_delay_ms / 1000.0,
            exponential_base=settings.exponential_base,
            jitter=settings.jitter,
        )


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay after a failed attempt (1-based)."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


class RetryPolicy:
    """Bounded retry with backoff for transient failures.

    Exceptions matching ``transient_exceptions`` are retried up to
    ``config.max_attempts`` total attempts; anything else propagates
    immediately. ``asyncio.CancelledError`` is never retried.
    """

    def __init__(self,
                 config: Optional[RetryConfig] = None,
                 transient_exceptions: Tuple[Type[BaseException], ...] = DEFAULT_TRANSIENT_EXCEPTIONS,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config or RetryConfig()
        self.transient_exceptions = transient_exceptions
        self._sleep = sleep
        self.logger = get_logger("eagerload.retry")

    def is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, self.transient_exceptions)

    async def call(self,
                   func: Callable[[], Awaitable[Any]],
                   *,
                   name: str = "fetch",
                   on_retry: Optional[Callable[[int, BaseException], None]] = None) -> Any:
        """Invoke ``func`` until it succeeds, fails permanently or attempts run out."""
        config = self.config

        for attempt in range(1, config.max_attempts + 1):
            try:
                result = await func()
            except self.transient_exceptions as e:
                if attempt == config.max_attempts:
                    self.logger.error(
                        "All retry attempts exhausted",
                        attempt=attempt,
                        max_attempts=config.max_attempts,
                        operation=name,
                        error=str(e) or type(e).__name__
                    )
                    raise RetryError(
                        f"{name} failed after {config.max_attempts} attempts",
                        last_exception=e,
                        attempts=attempt
                    ) from e

                delay = calculate_delay(attempt, config)
                self.logger.warning(
                    "Retry attempt failed, waiting before next attempt",
                    attempt=attempt,
                    delay=delay,
                    operation=name,
                    error=str(e) or type(e).__name__
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                await self._sleep(delay)
                continue

            if attempt > 1:
                self.logger.info("Retry succeeded", attempt=attempt, operation=name)
            return result

        # max_attempts >= 1 guarantees the loop returns or raises
        raise RuntimeError("retry loop exited without a result")
