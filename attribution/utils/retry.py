"""
Centralized async retry utility for transient failures.

Two layers use the same backoff arithmetic:
- retry_async: short in-call retries around a single remote request
  (seconds, gone when the process exits)
- the referral retry policy: persisted backoff between workflow attempts
  (minutes, survives restarts), see services/referrals/retry_policy.py

Retry policy for retry_async:
- Exponential backoff with jitter (±20%)
- Only retries on transient failures
- Preserves original exception on final failure
- No logging inside utility (caller handles logging)

Transient exceptions: asyncio.TimeoutError, httpx.HTTPError, ConnectionError, OSError.
Domain and validation errors are never retried → raised immediately.
"""

import asyncio
import random
from typing import Callable, Type, Tuple, Any, Optional
import httpx


DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_JITTER = 0.2


TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncio.TimeoutError,
    httpx.HTTPError,  # transport errors and HTTPStatusError from raise_for_status
    ConnectionError,
    OSError,
)


def exponential_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Delay before retry number `attempt` (0-based), doubling and capped.

    attempt=0 -> base_delay, attempt=1 -> 2*base_delay, ... <= max_delay
    """
    if attempt < 0:
        attempt = 0
    # Cap the exponent so huge attempt counts do not overflow
    return min(base_delay * (2 ** min(attempt, 32)), max_delay)


def apply_jitter(delay: float, jitter: float = DEFAULT_JITTER, rng: Optional[random.Random] = None) -> float:
    """
    Scale delay by a random factor in [1 - jitter, 1 + jitter].

    Pass a seeded `rng` to get a reproducible factor.
    """
    source = rng if rng is not None else random
    factor = 1 + jitter * (source.random() * 2 - 1)
    return max(0.0, delay * factor)


async def retry_async(
    fn: Callable[[], Any],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Retry an async function with exponential backoff.

    Args:
        fn: Async function to retry (callable that returns awaitable)
        retries: Number of retry attempts (default: 2, total attempts: 3)
        base_delay: Base delay in seconds for exponential backoff (default: 1.0)
        max_delay: Maximum delay in seconds (default: 10.0)
        retry_on: Tuple of exception types to retry on (default: transient exceptions)

    Returns:
        Result of the function call

    Raises:
        Original exception if all retries fail
        Non-retryable exceptions are raised immediately
    """
    last_exception = None

    for attempt in range(retries + 1):
        try:
            result = fn()
            if asyncio.iscoroutine(result):
                result = await result
            return result

        except Exception as e:
            last_exception = e

            if not isinstance(e, retry_on):
                raise

            if attempt >= retries:
                raise

            delay = apply_jitter(exponential_delay(attempt, base_delay, max_delay))
            await asyncio.sleep(delay)

    if last_exception:
        raise last_exception

    raise RuntimeError("retry_async: unexpected end of retry loop")
