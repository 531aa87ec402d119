import asyncio
import logging
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

log = logging.getLogger("node_pool")


class Web3NodePool:
    """
    Round-robin over AsyncWeb3 clients, one provider session per RPC URL.
    """

    def __init__(self, urls: list[str], request_timeout: float = 15.0) -> None:
        urls = [u.strip() for u in urls if u and u.strip()]
        urls = list(dict.fromkeys(urls))  # dedup
        if not urls:
            raise ValueError("no RPC URL configured (RPC_URL / RPC_POOL)")

        self._timeout = float(request_timeout)
        self._clients: list[AsyncWeb3] = [
            AsyncWeb3(AsyncHTTPProvider(u, request_kwargs={"timeout": self._timeout})) for u in urls
        ]
        self._rr = 0
        self._lock = asyncio.Lock()
        log.info(f"{len(self._clients)} RPC endpoint(s), primary={urls[0]} timeout={self._timeout:.1f}s")

    @property
    def primary(self) -> AsyncWeb3:
        """Writes always go through the first URL so nonces stay consistent."""
        return self._clients[0]

    async def next_client(self) -> AsyncWeb3:
        async with self._lock:
            c = self._clients[self._rr % len(self._clients)]
            self._rr += 1
            return c

    async def aclose(self) -> None:
        for c in self._clients:
            disconnect = getattr(c.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        log.debug(f"closed {len(self._clients)} provider session(s)")
