from typing import Optional

from airdrop_engine.models import Airdrop, AirdropStatus, AirdropType
from airdrop_engine.ports import AirdropRepository

JOINABLE_STATUSES = (AirdropStatus.PENDING, AirdropStatus.FUNDED)


def is_open_joinable(a: Airdrop) -> bool:
    return a.status in JOINABLE_STATUSES and (
            a.airdrop_type == AirdropType.OPEN or (a.airdrop_type == AirdropType.SCOPED and a.max_participants > 0)
    )


class InMemoryAirdropRepository(AirdropRepository):
    """Process-local store. Hands out copies so callers never share a record."""

    def __init__(self) -> None:
        self._items: dict[str, Airdrop] = {}

    async def create(self, airdrop: Airdrop) -> Airdrop:
        if airdrop.id in self._items:
            raise KeyError(f"airdrop {airdrop.id} already exists")
        self._items[airdrop.id] = airdrop.copy()
        return airdrop.copy()

    async def get(self, airdrop_id: str) -> Optional[Airdrop]:
        a = self._items.get(airdrop_id)
        return a.copy() if a else None

    async def update(self, airdrop: Airdrop) -> Airdrop:
        if airdrop.id not in self._items:
            raise KeyError(f"airdrop {airdrop.id} does not exist")
        self._items[airdrop.id] = airdrop.copy()
        return airdrop.copy()

    async def list_by_creator(self, creator_address: str) -> list[Airdrop]:
        c = creator_address.lower()
        out = [a.copy() for a in self._items.values() if a.creator_address.lower() == c]
        return sorted(out, key=lambda a: a.created_at, reverse=True)

    async def list_open_joinable(self) -> list[Airdrop]:
        out = [a.copy() for a in self._items.values() if is_open_joinable(a)]
        return sorted(out, key=lambda a: a.created_at, reverse=True)

    async def find_by_deposit_tx(self, tx_hash: str) -> Optional[Airdrop]:
        h = tx_hash.lower()
        for a in self._items.values():
            if a.deposit_tx_hash and a.deposit_tx_hash.lower() == h:
                return a.copy()
        return None
