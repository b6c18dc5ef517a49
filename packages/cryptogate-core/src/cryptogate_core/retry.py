"""
Retry utilities with bounded backoff for CryptoGate.

Retry decisions are driven by exception type: transient upstream errors
(timeouts, 5xx, 429) are retried, permanent ones are raised immediately.

Usage:
    from cryptogate_core.retry import retry_async, upstream_retry_config

    data = await retry_async(client.get, url, config=upstream_retry_config())
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import (
    Awaitable,
    Callable,
    Literal,
    Optional,
    ParamSpec,
    Type,
    TypeVar,
)

from .constants import RetryDefaults
from .exceptions import (
    DeliveryError,
    PermanentChainError,
    RateLimitedError,
    TransientChainError,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        backoff: "exponential" (base * exp_base**attempt) or "linear" (base * (attempt + 1))
        rate_limit_delay: Delay unit applied to rate-limit errors, scaled by attempt number
        retryable_exceptions: Tuple of exception types that trigger retries
        non_retryable_exceptions: Tuple of exception types that should not be retried
        rate_limit_exceptions: Exception types that use ``rate_limit_delay``
        on_retry: Optional callback called before each retry
    """

    max_retries: int = RetryDefaults.DEFAULT_MAX_RETRIES
    base_delay: float = RetryDefaults.DEFAULT_BASE_DELAY
    max_delay: float = RetryDefaults.DEFAULT_MAX_DELAY
    exponential_base: float = RetryDefaults.DEFAULT_EXPONENTIAL_BASE
    jitter: float = RetryDefaults.DEFAULT_JITTER
    backoff: Literal["exponential", "linear"] = "exponential"
    rate_limit_delay: float = 0.0
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()
    rate_limit_exceptions: tuple[Type[BaseException], ...] = ()
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None

    @property
    def max_attempts(self) -> int:
        """Total number of attempts including the first one."""
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt number.

        Args:
            attempt: The attempt number (0-based)

        Returns:
            Delay in seconds
        """
        if self.backoff == "linear":
            delay = self.base_delay * (attempt + 1)
        else:
            delay = self.base_delay * (self.exponential_base ** attempt)

        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def delay_for(self, attempt: int, exception: BaseException) -> float:
        """Delay before the next attempt, honoring rate-limit scaling."""
        if self.rate_limit_delay > 0 and isinstance(exception, self.rate_limit_exceptions):
            return min(self.rate_limit_delay * (attempt + 1), self.max_delay)
        return self.calculate_delay(attempt)

    def should_retry(self, exception: BaseException) -> bool:
        """Determine if the exception should trigger a retry."""
        # Non-retryable takes precedence
        if isinstance(exception, self.non_retryable_exceptions):
            return False
        return isinstance(exception, self.retryable_exceptions)

def upstream_retry_config(
    attempts: int = RetryDefaults.UPSTREAM_ATTEMPTS,
    base_delay: float = RetryDefaults.UPSTREAM_BASE_DELAY,
    rate_limit_delay: float = RetryDefaults.UPSTREAM_RATE_LIMIT_DELAY,
) -> RetryConfig:
    """Retry policy for chain API calls.

    Linear backoff on timeouts and 5xx, ``rate_limit_delay * attempt`` on 429,
    immediate failure on anything permanent.
    """
    return RetryConfig(
        max_retries=max(0, attempts - 1),
        base_delay=base_delay,
        max_delay=RetryDefaults.DEFAULT_MAX_DELAY,
        jitter=0.0,
        backoff="linear",
        rate_limit_delay=rate_limit_delay,
        retryable_exceptions=(TransientChainError,),
        non_retryable_exceptions=(PermanentChainError,),
        rate_limit_exceptions=(RateLimitedError,),
    )

def webhook_retry_config(
    attempts: int = RetryDefaults.WEBHOOK_ATTEMPTS,
    base_delay: float = RetryDefaults.WEBHOOK_BASE_DELAY,
) -> RetryConfig:
    """Retry policy for webhook delivery: doubling delay per attempt."""
    return RetryConfig(
        max_retries=max(0, attempts - 1),
        base_delay=base_delay,
        max_delay=RetryDefaults.DEFAULT_MAX_DELAY,
        exponential_base=2.0,
        jitter=0.0,
        retryable_exceptions=(DeliveryError,),
    )

@dataclass
class RetryStats:
    """Statistics about retry execution.

    Attributes:
        attempts: Total number of attempts (including initial)
        total_delay: Total delay time in seconds
        success: Whether the operation eventually succeeded
        last_exception: The last exception if operation failed
    """

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None

class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        stats: Statistics about the retry attempts
        original_exception: The last exception that was raised
    """

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception

async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Args:
        func: The async function to execute
        *args: Positional arguments for the function
        config: Retry configuration (uses defaults if None)
        **kwargs: Keyword arguments for the function

    Returns:
        The return value of the function

    Raises:
        RetryExhausted: If all retry attempts fail
        Exception: Any non-retryable exception, unchanged
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    last_exception: Optional[BaseException] = None

    for attempt in range(config.max_retries + 1):
        stats.attempts = attempt + 1

        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result

        except Exception as e:
            last_exception = e
            stats.last_exception = e

            if not config.should_retry(e):
                logger.debug(
                    f"Exception {type(e).__name__} is not retryable, "
                    f"raising immediately"
                )
                raise

            if attempt >= config.max_retries:
                break

            delay = config.delay_for(attempt, e)
            stats.total_delay += delay

            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{getattr(func, '__name__', 'call')} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )

            if config.on_retry:
                config.on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for "
        f"{getattr(func, '__name__', 'call')}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception

__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryExhausted",
    "retry_async",
    "upstream_retry_config",
    "webhook_retry_config",
]
