import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

log = logging.getLogger("retry")

T = TypeVar("T")


async def retry_async(
        fn: Callable[[], Awaitable[T]],
        label: str,
        attempts: int,
        delay: float,
        timeout: Optional[float] = None,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        accept: Optional[Callable[[T], bool]] = None,
) -> Optional[T]:
    """
    Runs fn up to `attempts` times with a fixed delay in between.
    Each attempt is bounded by `timeout`. A result rejected by `accept`
    counts as a failed attempt. Returns None once the budget is spent;
    exceptions outside `retry_on` propagate immediately.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            if timeout:
                result = await asyncio.wait_for(fn(), timeout=timeout)
            else:
                result = await fn()
            if accept is None or accept(result):
                return result
            log.info(f"{label}: attempt {attempt}/{attempts} returned nothing usable")
        except retry_on as e:
            log.warning(f"{label}: attempt {attempt}/{attempts} failed: {e!r}")
        if attempt < attempts and delay > 0:
            await asyncio.sleep(delay)
    return None
