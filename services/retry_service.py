"""
Retry Service with Exponential Backoff
Ensures resilient payment, email and screening provider calls
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from utils.exception_handler import ExternalServiceError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_retryable_error(error: BaseException) -> bool:
    """Only transient provider failures are retried; everything else surfaces at once"""
    return isinstance(error, ExternalServiceError) and error.retryable


class RetryService:
    """Service for handling retries with exponential backoff"""

    @staticmethod
    def compute_delay(delay: float, jitter: bool) -> float:
        if jitter:
            return delay * (0.5 + random.random())
        return delay

    @staticmethod
    async def retry_async(
        func: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        should_retry: Callable[[BaseException], bool] = is_retryable_error,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        """
        Retry an async function with exponential backoff

        Args:
            func: Zero-argument async callable to retry
            max_attempts: Maximum number of attempts
            initial_delay: Initial delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Add random jitter to prevent thundering herd
            should_retry: Predicate deciding whether an error is transient
            sleep: Awaitable sleep, swappable in tests
        """
        attempt = 0
        delay = initial_delay
        name = getattr(func, "__name__", repr(func))

        while True:
            try:
                return await func()
            except Exception as e:
                attempt += 1

                if not should_retry(e):
                    raise

                if attempt >= max_attempts:
                    logger.error(f"Max retry attempts ({max_attempts}) reached for {name}")
                    raise

                actual_delay = RetryService.compute_delay(delay, jitter)

                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed for {name}: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )

                await sleep(actual_delay)

                # Exponential backoff
                delay = min(delay * exponential_base, max_delay)

    @classmethod
    async def with_strategy(
        cls,
        strategy: str,
        func: Callable[[], Awaitable[T]],
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> T:
        """Retry ``func`` with one of the predefined RETRY_STRATEGIES"""
        options: Dict[str, Any] = dict(RETRY_STRATEGIES[strategy])
        if sleep is not None:
            options["sleep"] = sleep
        return await cls.retry_async(func, **options)


# Predefined retry strategies for different services
RETRY_STRATEGIES = {
    'payment': {
        'max_attempts': 5,
        'initial_delay': 2.0,
        'max_delay': 30.0,
        'exponential_base': 2.0
    },
    'email': {
        'max_attempts': 3,
        'initial_delay': 1.0,
        'max_delay': 10.0,
        'exponential_base': 2.0
    },
    'screening': {
        'max_attempts': 4,
        'initial_delay': 1.5,
        'max_delay': 20.0,
        'exponential_base': 2.0
    },
}

