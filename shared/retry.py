"""
Retry mechanism for resilient operations.
"""

import asyncio
import random
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior.

    ``max_attempts`` counts the first call, so ``max_attempts=11`` means one
    attempt followed by up to ten retries. ``max_delay=None`` disables the cap.
    """

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: Optional[float] = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
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


def calculate_delay(retry_index: int, config: RetryConfig) -> float:
    """Calculate the delay (seconds) before retry number ``retry_index`` (0-based)."""
    delay = config.base_delay * (config.exponential_base ** retry_index)

    if config.max_delay is not None:
        delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


async def retry_async(func: Callable[[], Awaitable[Any]],
                      config: RetryConfig,
                      exceptions: tuple = (Exception,),
                      *,
                      name: Optional[str] = None,
                      on_failure: Optional[Callable[[Exception, int], None]] = None) -> Any:
    """Call ``func`` until it succeeds or ``config.max_attempts`` is reached.

    ``on_failure(exc, attempt)`` is invoked for every caught failure before
    the backoff sleep. Raises :class:`RetryError` holding the last exception.
    """
    name = name or getattr(func, "__name__", "operation")
    logger = get_logger(f"retry.{name}")

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func()
        except exceptions as e:
            if on_failure is not None:
                on_failure(e, attempt)

            if attempt == config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    function=name,
                    error=str(e)
                )
                raise RetryError(
                    f"{name} failed after {config.max_attempts} attempts",
                    last_exception=e,
                    attempts=attempt
                ) from e

            delay = calculate_delay(attempt - 1, config)
            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                attempts_left=config.max_attempts - attempt,
                delay=delay,
                function=name,
                error=str(e)
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                logger.info("Retry succeeded", attempt=attempt, function=name)
            return result
