"""
Retry and timeout utilities for external calls.

Retry decisions are made on the error itself so the same rules apply to the
connector's request loop and to anything else that wraps an external call.
"""
import asyncio
import random
from typing import Awaitable, Optional, Tuple, Type, TypeVar
from license_sync.utils.logger import log

T = TypeVar("T")


# Default retryable exceptions (network/API errors)
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    delay = base_delay * (exponential_base ** (attempt - 1))
    delay = min(delay, max_delay)

    # Add jitter (0-25% of delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


def is_retryable_error(
    error: Exception,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
) -> bool:
    """
    Check if an error is worth retrying.

    Network failures, timeouts and 5xx responses are retried. Client errors
    (4xx, including auth and rate limiting) are not: the caller classifies
    those instead.
    """
    if isinstance(error, retryable_exceptions):
        return True

    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status >= 500

    error_str = str(error).lower()

    if "http 5" in error_str:
        return True

    if "timeout" in error_str or "timed out" in error_str:
        return True

    if "econnrefused" in error_str or "network" in error_str:
        return True

    if "connection" in error_str and ("refused" in error_str or "reset" in error_str or "failed" in error_str):
        return True

    return False


async def with_timeout(awaitable: Awaitable[T], timeout_seconds: Optional[float], operation_name: str = "operation") -> T:
    """
    Await with a deadline.

    On expiry raises TimeoutError with "timeout" in the message so the sync
    recovery policy can recognise it.
    """
    if not timeout_seconds:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        log.error(f"{operation_name} timed out after {timeout_seconds:.1f}s")
        raise TimeoutError(f"{operation_name} timeout after {timeout_seconds:.1f}s")
