"""Async retry with bounded exponential backoff for transient failures.

Usage:
    policy = RetryPolicy.from_config(config.repository)
    result = await retry_with_backoff(fetch_course, course_id, policy=policy)
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .config import RepositoryConfig
from .exceptions import TransientNetworkError
from .logging_config import get_logger

logger = get_logger('retry')

T = TypeVar('T')

RetryCallback = Callable[[Exception, int, float], None]

DEFAULT_RETRYABLE: Tuple[Type[Exception], ...] = (
    TransientNetworkError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try a call and how long to wait in between.

    ``max_attempts`` counts the first call, so the default of 2 means one retry.
    """
    max_attempts: int = 2
    initial_delay: float = 0.25
    max_delay: float = 2.0
    backoff_factor: float = 2.0
    jitter: bool = True
    retryable: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE

    @classmethod
    def from_config(cls, config: RepositoryConfig,
                    retryable: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            backoff_factor=config.backoff_factor,
            jitter=config.jitter,
            retryable=retryable,
        )

    def delay_before(self, retry_number: int, error: Exception) -> float:
        """Seconds to wait before retry ``retry_number`` (1-based).

        A ``retry_after`` hint on the error replaces the computed backoff.
        Either way the wait never exceeds ``max_delay``.
        """
        hint = getattr(error, 'retry_after', None)
        if hint:
            base = hint
        else:
            base = self.initial_delay * self.backoff_factor ** (retry_number - 1)
        if self.jitter:
            base *= 0.5 + random.random()
        return min(base, self.max_delay)


async def _call_with_policy(func: Callable[..., Awaitable[T]], policy: RetryPolicy,
                            on_retry: Optional[RetryCallback], *args, **kwargs) -> T:
    name = getattr(func, '__name__', repr(func))
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except policy.retryable as e:
            if attempt >= policy.max_attempts:
                logger.error(f"{name} failed after {attempt} attempt(s): {e}")
                raise
            wait = policy.delay_before(attempt, e)
            logger.warning(
                f"{name} attempt {attempt}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {wait:.2f}s"
            )
            if on_retry:
                on_retry(e, attempt, wait)
            await asyncio.sleep(wait)
            attempt += 1


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[RetryCallback] = None,
    **kwargs
) -> T:
    """Await ``func(*args, **kwargs)`` under ``policy`` (defaults to one retry)."""
    return await _call_with_policy(func, policy or RetryPolicy(), on_retry, *args, **kwargs)
