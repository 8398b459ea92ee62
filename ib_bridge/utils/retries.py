import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def async_retry(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_delay: float,
    exceptions: Iterable[Type[BaseException]],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Retry an idempotent async call with exponential backoff.

    param func: async callable returning a value
    param retries: number of retries (not counting the first attempt)
    param base_delay: initial backoff delay in seconds
    param exceptions: exception types considered transient (e.g. httpx.RequestError)
    param sleep: awaitable sleep, injectable so tests do not wait
    """
    attempt = 0
    delay = base_delay
    exc_types = tuple(exceptions)

    while True:
        try:
            return await func()
        except exc_types as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning("Transient failure (%s), retry %d/%d in %.2fs", e, attempt, retries, delay)
            await sleep(delay)
            delay *= 2
