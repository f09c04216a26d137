import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from airdrop.errors import RetriesExhausted

log = logging.getLogger("airdrop.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[object]]


async def retry(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_retries: int,
    delay: float,
    backoff: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it returns, at most ``max_retries + 1`` times.

    Args:
        operation: Coroutine function called with the 1-based attempt number.
        max_retries: Retries after the first attempt. 0 means a single attempt.
        delay: Seconds to wait after the first failure.
        backoff: Multiplier applied to the delay after every further failure.
            1.0 keeps the delay fixed.
        retry_on: Exception types that trigger another attempt. Anything else
            propagates immediately.
        sleep: Awaitable used for waiting; injectable for tests.
        label: Name used in log lines.

    Returns:
        Whatever ``operation`` returned on the first successful attempt.

    Raises:
        RetriesExhausted: After the last attempt failed, wrapping its error.
    """
    if max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {max_retries}")

    attempt = 0
    wait = delay
    while True:
        attempt += 1
        try:
            return await operation(attempt)
        except retry_on as e:
            if attempt > max_retries:
                log.debug("%s failed on final attempt %s: %s", label, attempt, e)
                raise RetriesExhausted(e, attempt) from e
            log.debug("%s failed (attempt %s/%s): %s - retrying in %.2fs",
                      label, attempt, max_retries + 1, e, wait)
            await sleep(wait)
            wait *= backoff
