import asyncio
import time
from collections import deque


class RateLimiter:
    """
    Sliding one second window shared by every RPC call of the process.
    rps <= 0 disables limiting (tests, local nodes).
    """

    def __init__(self, rps: int) -> None:
        self._rps = int(rps)
        self._hits: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        if self._rps <= 0:
            return
        while True:
            async with self._lock:
                now = time.monotonic()
                while self._hits and now - self._hits[0] >= 1.0:
                    self._hits.popleft()
                if len(self._hits) < self._rps:
                    self._hits.append(now)
                    return
                wait_for = 1.0 - (now - self._hits[0])
            await asyncio.sleep(max(wait_for, 0.001))
