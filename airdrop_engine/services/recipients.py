import logging
from typing import Iterable, Optional

from airdrop_engine.models import Identity, AddressIdentity, ExternalIdentity, ResolvedRecipient
from airdrop_engine.ports import IdentityResolver, ExcludesRepository, WalletCache
from airdrop_engine.utils.addresses import is_valid_address

log = logging.getLogger("recipients")


def parse_identity(raw) -> Identity:
    """Boundary helper: plain address strings pay directly, anything else needs resolution."""
    if isinstance(raw, (AddressIdentity, ExternalIdentity)):
        return raw
    s = str(raw).strip()
    if is_valid_address(s):
        return AddressIdentity(s.lower())
    return ExternalIdentity(s)


def _key(identity: Identity) -> str:
    if isinstance(identity, AddressIdentity):
        return identity.address.lower()
    return identity.value.lower()


class RecipientResolver:
    def __init__(
            self,
            identity_resolver: IdentityResolver,
            treasury_address: str,
            bot_id: str = "",
            excludes_repo: Optional[ExcludesRepository] = None,
    ) -> None:
        self._identities = identity_resolver
        self._self_ids = {x.lower() for x in (treasury_address, bot_id) if x}
        self._excludes_repo = excludes_repo

    async def _static_excludes(self) -> set[str]:
        if self._excludes_repo is None:
            return set()
        return await self._excludes_repo.get_excludes()

    async def _resolve_one(self, identity: Identity, only_resolved: bool) -> Optional[ResolvedRecipient]:
        if isinstance(identity, AddressIdentity):
            return ResolvedRecipient(address=identity.address.lower(), source=identity, resolved=False)

        wallet = None
        try:
            wallet = await self._identities.resolve_wallet(identity.value)
        except Exception as e:
            log.warning(f"wallet lookup failed for {identity.value}: {e!r}")
        if wallet and is_valid_address(wallet):
            return ResolvedRecipient(address=wallet.lower(), source=identity, resolved=True)
        if only_resolved:
            log.debug(f"dropping unresolved identity {identity.value}")
            return None
        if is_valid_address(identity.value):
            return ResolvedRecipient(address=identity.value.lower(), source=identity, resolved=False)
        log.debug(f"dropping identity {identity.value}: unresolved and not an address")
        return None

    async def resolve(self, identity: Identity, exclude: Iterable[str] = (),
                      only_resolved: bool = False) -> Optional[ResolvedRecipient]:
        """Single identity variant used by join(); None when excluded or unresolvable."""
        skip = self._self_ids | {x.lower() for x in exclude} | await self._static_excludes()
        if _key(identity) in skip:
            return None
        rec = await self._resolve_one(identity, only_resolved)
        if rec is None or rec.address in skip:
            return None
        return rec

    async def resolve_unique_recipients(
            self,
            identities: Iterable,
            exclude: Iterable[str] = (),
            only_resolved: bool = False,
    ) -> list[str]:
        skip = self._self_ids | {x.lower() for x in exclude} | await self._static_excludes()
        seen: set[str] = set()
        out: list[str] = []
        dropped = 0
        for raw in identities:
            identity = parse_identity(raw)
            if _key(identity) in skip:
                continue
            rec = await self._resolve_one(identity, only_resolved)
            if rec is None:
                dropped += 1
                continue
            if rec.address in skip or rec.address in seen:
                continue
            seen.add(rec.address)
            out.append(rec.address)
        if dropped:
            log.info(f"resolved {len(out)} recipients, {dropped} identities dropped")
        return out


class CachedIdentityResolver:
    """Remembers identity -> wallet pairs; misses are not cached."""

    def __init__(self, upstream: IdentityResolver, cache: WalletCache) -> None:
        self._upstream = upstream
        self._cache = cache

    async def resolve_wallet(self, identity: str) -> Optional[str]:
        key = identity.lower()
        wallet = await self._cache.get_wallet(key)
        if wallet:
            return wallet
        wallet = await self._upstream.resolve_wallet(identity)
        if wallet and is_valid_address(wallet):
            await self._cache.save_wallet(key, wallet.lower())
            return wallet.lower()
        return None
