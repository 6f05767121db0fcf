"""Retry utilities for transient object storage failures.

Only the media pipeline retries; sync cycles never retry in-process and
wait for the next scheduler tick instead.
"""

import time
from functools import wraps
from typing import Any, Callable, TypeVar

from pbxsync_core.observability.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        retryable_exceptions: tuple = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.retryable_exceptions = retryable_exceptions
        self.sleep = sleep


def exponential_backoff(attempt: int, config: RetryConfig) -> float:
    """Calculate exponential backoff delay for a 1-based attempt number."""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    return min(delay, config.max_delay)


def call_with_retry(func: Callable[..., T], config: RetryConfig, *args: Any, **kwargs: Any) -> T:
    """Call ``func`` and retry on ``config.retryable_exceptions``.

    The last exception is re-raised once attempts are exhausted.
    """
    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_attempts:
                raise
            delay = exponential_backoff(attempt, config)
            logger.warning(
                "Transient failure, retrying",
                operation=getattr(func, "__name__", repr(func)),
                attempt=attempt,
                delay_seconds=delay,
                error=str(e),
            )
            config.sleep(delay)
    raise RuntimeError("Unexpected retry state")


def with_retry(config: RetryConfig | None = None) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form of :func:`call_with_retry`."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return call_with_retry(func, config, *args, **kwargs)

        return wrapper

    return decorator
