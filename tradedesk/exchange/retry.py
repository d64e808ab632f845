"""Bounded retry and timeout helpers for external calls."""
import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import aiohttp
import ccxt.async_support as ccxt
import structlog

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0


# Transport failures worth another attempt. Exchange-side rejections
# (insufficient margin, invalid order) are not in this list.
RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    ccxt.NetworkError,
    ccxt.ExchangeNotAvailable,
    ccxt.RequestTimeout,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


def backoff_delay(
    attempt: int,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
) -> float:
    """Capped exponential delay for a zero-based attempt number."""
    return min(base_delay * (exponential_base ** attempt), max_delay)


async def retry_call(
    operation: Callable[[], Awaitable[Any]],
    name: str,
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    timeout: Optional[float] = None,
    retryable_exceptions: Tuple[Type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
) -> Any:
    """Await an operation with an optional per-attempt timeout and backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        name: Event name prefix used in retry logs
        max_retries: Retries after the first attempt
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        timeout: Per-attempt timeout in seconds (None waits forever)
        retryable_exceptions: Exceptions that trigger another attempt

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            if timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=timeout)
        except ccxt.RateLimitExceeded as e:
            # Rate limits get a longer delay than ordinary network errors
            last_exception = e
            if attempt < max_retries:
                delay = min(60.0 * (2 ** attempt), 300.0)
                logger.warning(f"{name}.rate_limit_hit", attempt=attempt + 1, delay=delay)
                await asyncio.sleep(delay)
        except retryable_exceptions as e:
            last_exception = e
            if attempt < max_retries:
                delay = backoff_delay(attempt, base_delay, max_delay, exponential_base)
                logger.warning(
                    f"{name}.retry_attempt",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e) or type(e).__name__,
                )
                await asyncio.sleep(delay)

    logger.error(
        f"{name}.max_retries_exceeded",
        max_retries=max_retries,
        last_error=str(last_exception) or type(last_exception).__name__,
    )
    raise last_exception


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: Tuple[Type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
):
    """Decorator for adding retry logic with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_call(
                lambda: func(*args, **kwargs),
                name=func.__name__,
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                retryable_exceptions=retryable_exceptions,
            )
        return wrapper
    return decorator
