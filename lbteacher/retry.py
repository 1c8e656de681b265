"""
Retry logic for oracle calls.

Retries only errors that are classified as retryable (rate limiting,
server errors, dropped connections) with linearly increasing backoff;
everything else is re-raised on the first failure.

Usage:
    from lbteacher.retry import execute_with_retry

    reply = await execute_with_retry(
        transport.create_message, request,
        max_attempts=3, base_delay=2.0,
    )
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aiohttp

from .errors import OracleError, RetryExhaustedError

logger = logging.getLogger(__name__)


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, OracleError):
        return error.retryable
    return isinstance(error, (aiohttp.ClientConnectionError, asyncio.TimeoutError, ConnectionError))


def linear_delay(attempt: int, base_delay: float) -> float:
    """Delay before the next attempt: base_delay x attempt number."""
    return base_delay * attempt


async def execute_with_retry(
    func: Callable[..., Awaitable],
    *args,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Optional[Callable[[float], Awaitable]] = None,
    **kwargs
):
    """
    Execute an async function with linear-backoff retry.

    Args:
        func: Async function to execute
        max_attempts: Total attempts, including the first
        base_delay: Seconds to wait after the first failure; grows linearly
        retryable: Predicate deciding whether an error is worth retrying
        sleep: Awaitable sleep, overridable in tests

    Returns:
        Result of func

    Raises:
        The original error when it is not retryable,
        RetryExhaustedError when every attempt failed.
    """
    sleep = sleep or asyncio.sleep
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not retryable(e):
                raise
            last_error = e
            if attempt < max_attempts:
                delay = linear_delay(attempt, base_delay)
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                await sleep(delay)

    logger.error(f"Retry exhausted after {max_attempts} attempts: {last_error}")
    raise RetryExhaustedError(
        f"Failed after {max_attempts} attempts: {last_error}", last_error=last_error
    ) from last_error
