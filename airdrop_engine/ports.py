from typing import Protocol, Optional, Any

from airdrop_engine.models import Airdrop

# (target, calldata)
Call = tuple[str, bytes]
Receipt = dict[str, Any]
LogEntry = dict[str, Any]


class ChainReader(Protocol):
    async def call(self, target: str, data: bytes) -> bytes: ...

    async def batch_call(self, calls: list[Call], allow_failure: bool = True) -> list[tuple[bool, bytes]]: ...

    async def get_logs(self, address: str, topics: list, from_block: int, to_block: int) -> list[LogEntry]: ...

    async def block_number(self) -> int: ...

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]: ...


class ChainWriter(Protocol):
    async def supports_batched_execution(self, account: str) -> bool: ...

    async def execute_batch(self, account: str, calls: list[Call]) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt: ...


class IdentityResolver(Protocol):
    async def resolve_wallet(self, identity: str) -> Optional[str]: ...


class AirdropRepository(Protocol):
    async def create(self, airdrop: Airdrop) -> Airdrop: ...

    async def get(self, airdrop_id: str) -> Optional[Airdrop]: ...

    async def update(self, airdrop: Airdrop) -> Airdrop: ...

    async def list_by_creator(self, creator_address: str) -> list[Airdrop]: ...

    async def list_open_joinable(self) -> list[Airdrop]: ...

    async def find_by_deposit_tx(self, tx_hash: str) -> Optional[Airdrop]: ...


class HolderCache(Protocol):
    async def get_holders(self, nft_address: str, max_age: float) -> Optional[set[str]]: ...

    async def save_holders(self, nft_address: str, holders: set[str]) -> None: ...


class WalletCache(Protocol):
    async def get_wallet(self, identity: str) -> Optional[str]: ...

    async def save_wallet(self, identity: str, wallet: str) -> None: ...


class ExcludesRepository(Protocol):
    async def get_excludes(self) -> set[str]: ...
