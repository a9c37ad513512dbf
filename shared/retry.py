"""
Bounded retry for rule store calls.

Retries live with the store adapter, never with the resolver: the resolver
puts a hard timeout around the whole (retried) call and fails open.
"""

import asyncio
import functools
import random
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 2,
                 base_delay: float = 0.05,
                 max_delay: float = 0.5,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff capped at max_delay, with 10% jitter."""
    delay = min(config.base_delay * (config.exponential_base ** (attempt - 1)), config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


def retry_on_exception(exceptions: tuple = (Exception,),
                       config: Optional[RetryConfig] = None) -> Callable:
    """Decorator for retrying async functions on exceptions."""

    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            logger = get_logger(f"rules.retry.{func.__name__}")

            for attempt in range(1, config.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == config.max_attempts:
                        logger.warning(
                            "All retry attempts exhausted",
                            attempts=attempt,
                            function=func.__name__,
                            error=str(e)
                        )
                        raise RetryError(
                            f"{func.__name__} failed after {attempt} attempts",
                            last_exception=e,
                            attempts=attempt
                        ) from e

                    delay = calculate_delay(attempt, config)
                    logger.debug(
                        "Retrying after failure",
                        attempt=attempt,
                        delay=delay,
                        function=func.__name__,
                        error=str(e)
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
