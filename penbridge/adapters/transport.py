"""
Retry with exponential backoff at the adapter boundary.

Only transport failures (connection errors, timeouts, 5xx answers) are retried.
Anything the remote side rejected outright is raised immediately.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from ..errors import TransportError

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 1.0


def is_retryable(error: Exception) -> bool:
    """True for failures worth another attempt."""
    if isinstance(error, (httpx.TransportError, TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return False


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    description: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
) -> T:
    """
    Await ``operation`` until it succeeds or retries run out.

    The first failure is followed by up to ``max_retries`` retries, waiting
    ``backoff_base * 2 ** n`` before retry n (1s, 2s, 4s with defaults).

    Raises:
        TransportError: when the call and every retry failed with a retryable error
    """
    attempts = max_retries + 1
    last_error: Exception = TransportError(f"{description}: no attempt made")
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            if attempt + 1 < attempts:
                delay = backoff_base * (2 ** attempt)
                logging.warning(
                    f"{description} failed (attempt {attempt + 1}/{attempts}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    logging.error(f"{description} failed after {attempts} attempts: {last_error}")
    raise TransportError(f"{description} failed: {last_error}", attempts=attempts) from last_error
