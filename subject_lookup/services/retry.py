"""
Retry helpers with exponential and fixed backoff for portal calls.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """
    Exponential backoff calculator for retry delays.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 2.0,
        multiplier: float = 2.0
    ):
        """
        Initialize exponential backoff calculator.

        Args:
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            multiplier: Multiplier for each retry
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for a given attempt number.

        Args:
            attempt: Attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.multiplier ** attempt)
        return min(delay, self.max_delay)


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_retries: int = 3,
    backoff: Optional[ExponentialBackoff] = None,
    exceptions: tuple = (Exception,),
    label: Optional[str] = None,
    **kwargs
) -> Any:
    """
    Call an async function, retrying with exponential backoff.

    Exceptions outside `exceptions` propagate on the first occurrence.

    Args:
        func: Coroutine function to call
        max_retries: Number of retries after the first attempt
        backoff: Delay calculator (defaults to 0.5s, 1s, 2s)
        exceptions: Exception types that trigger a retry
        label: Name used in log lines (defaults to the function name)

    Returns:
        Whatever `func` returns
    """
    backoff = backoff or ExponentialBackoff()
    name = label or getattr(func, '__name__', 'call')
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            result = await func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"{name} succeeded on attempt {attempt + 1}/{max_retries + 1}")
            return result
        except exceptions as e:
            last_exception = e
            if attempt < max_retries:
                delay = backoff.calculate_delay(attempt)
                logger.warning(
                    f"{name} failed on attempt {attempt + 1}/{max_retries + 1}: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"{name} failed after {max_retries + 1} attempts: {e}")

    raise last_exception


async def retry_fixed(
    func: Callable[..., Awaitable[Any]],
    *args,
    retries: int = 2,
    delay: float = 2.0,
    exceptions: tuple = (Exception,),
    label: Optional[str] = None,
    **kwargs
) -> Any:
    """
    Call an async function, retrying with a constant delay between attempts.

    Args:
        func: Coroutine function to call
        retries: Number of retries after the first attempt
        delay: Seconds to wait between attempts
        exceptions: Exception types that trigger a retry
        label: Name used in log lines

    Returns:
        Whatever `func` returns
    """
    backoff = ExponentialBackoff(base_delay=delay, max_delay=delay, multiplier=1.0)
    return await retry_async(
        func, *args,
        max_retries=retries,
        backoff=backoff,
        exceptions=exceptions,
        label=label,
        **kwargs
    )
