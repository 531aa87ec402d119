import logging
from typing import Optional
import aiohttp

from airdrop_engine.errors import TransientChainError
from airdrop_engine.ports import IdentityResolver
from airdrop_engine.utils.addresses import is_valid_address

log = logging.getLogger("identity_http")


class HttpIdentityResolver(IdentityResolver):
    """
    GET <base_url>/<identity> -> {"wallet": "0x..."}; 404 means no wallet.
    """

    def __init__(self, base_url: str, timeout: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def resolve_wallet(self, identity: str) -> Optional[str]:
        url = f"{self.base_url}/{identity}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as s:
                async with s.get(url) as r:
                    if r.status == 404:
                        return None
                    if r.status != 200:
                        raise TransientChainError(f"wallet lookup http={r.status} for {identity}")
                    j = await r.json()
        except aiohttp.ClientError as e:
            raise TransientChainError(f"wallet lookup failed for {identity}: {e!r}") from e
        wallet = (j or {}).get("wallet")
        if not is_valid_address(wallet):
            log.debug(f"no wallet for {identity}: {j!r}")
            return None
        return wallet.lower()


class NullIdentityResolver(IdentityResolver):
    """Used when no resolver endpoint is configured: only plain addresses can be paid."""

    async def resolve_wallet(self, identity: str) -> Optional[str]:
        return None
