"""
Pytest fixtures for the airdrop engine. Chain, identity and holder
collaborators are in-process fakes; nothing talks to an RPC node.
"""

from __future__ import annotations

from typing import Optional

import pytest
from eth_abi import encode, decode

from airdrop_engine.errors import TransientChainError, LogRangeTooLarge
from airdrop_engine.repositories.airdrops_memory import InMemoryAirdropRepository
from airdrop_engine.services.executor import DistributionExecutor, TRANSFER_SELECTOR
from airdrop_engine.services.holders import TOTAL_SUPPLY_SELECTOR, OWNER_OF_SELECTOR
from airdrop_engine.services.lifecycle import AirdropLifecycle, ERC20_TRANSFER_TOPIC
from airdrop_engine.services.recipients import RecipientResolver

TREASURY = "0x" + "7e" * 20
ADMIN = "0x" + "ad" * 20
TOKEN = "0x" + "70" * 20
NFT = "0x" + "4f" * 20
CREATOR = "0x" + "c0" * 20


def addr(n: int) -> str:
    return "0x" + f"{n:040x}"


def topic_address(a: str) -> str:
    return "0x" + "00" * 12 + a[2:].lower()


def topic_int(n: int) -> str:
    return "0x" + f"{n:064x}"


def deposit_receipt(amount: int, token: str = TOKEN, to: str = TREASURY, status: int = 1) -> dict:
    return {
        "status": status,
        "logs": [{
            "address": token,
            "topics": [ERC20_TRANSFER_TOPIC, topic_address(CREATOR), topic_address(to)],
            "data": encode(["uint256"], [amount]),
        }],
    }


def decode_transfer(data: bytes) -> tuple[str, int]:
    assert data[:4] == TRANSFER_SELECTOR
    to, amount = decode(["address", "uint256"], data[4:])
    return to.lower(), int(amount)


class FakeChain:
    """ChainReader + ChainWriter double with scriptable failures."""

    def __init__(self) -> None:
        self.supply: dict[str, int] = {}
        self.owners: dict[str, dict[int, str]] = {}
        self.logs: list[dict] = []
        self.head = 0
        self.max_log_range: Optional[int] = None
        self.receipts: dict[str, dict] = {}

        self.supports: list[bool] = []  # consumed per check, then True
        self.send_failures: list[Exception] = []  # consumed per execute_batch call, None = success
        self.reverted: set[int] = set()  # 1-based numbers of sent batches whose receipt has status 0
        self.receipt_failures: dict[int, int] = {}  # tx number -> receipt waits that time out before it shows up
        self.sent: list[tuple[str, list]] = []
        self.support_checks = 0
        self.supply_calls = 0
        self.log_queries: list[tuple[int, int]] = []

    # reader
    async def call(self, target: str, data: bytes) -> bytes:
        if data == TOTAL_SUPPLY_SELECTOR:
            self.supply_calls += 1
            if target not in self.supply:
                raise TransientChainError("execution reverted")
            return encode(["uint256"], [self.supply[target]])
        raise AssertionError(f"unexpected call {data[:4].hex()}")

    async def batch_call(self, calls, allow_failure: bool = True):
        out = []
        for target, data in calls:
            assert data[:4] == OWNER_OF_SELECTOR
            token_id = decode(["uint256"], data[4:])[0]
            owner = self.owners.get(target, {}).get(token_id)
            out.append((True, encode(["address"], [owner])) if owner else (False, b""))
        return out

    async def get_logs(self, address, topics, from_block, to_block):
        self.log_queries.append((from_block, to_block))
        if self.max_log_range is not None and to_block - from_block + 1 > self.max_log_range:
            raise LogRangeTooLarge("query returned more than 10000 results")
        return [e for e in self.logs if from_block <= e["blockNumber"] <= to_block]

    async def block_number(self) -> int:
        return self.head

    async def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    # writer
    async def supports_batched_execution(self, account: str) -> bool:
        self.support_checks += 1
        return self.supports.pop(0) if self.supports else True

    async def execute_batch(self, account: str, calls) -> str:
        n = len(self.sent)
        if self.send_failures:
            err = self.send_failures.pop(0)
            if err is not None:
                raise err
        self.sent.append((account, list(calls)))
        return "0x" + f"{n + 1:064x}"

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> dict:
        n = int(tx_hash, 16)
        if self.receipt_failures.get(n, 0) > 0:
            self.receipt_failures[n] -= 1
            raise TransientChainError(f"no receipt for {tx_hash} within {timeout:.0f}s")
        return {"status": 0 if n in self.reverted else 1, "transactionHash": tx_hash}

    def paid(self) -> list[tuple[str, int]]:
        return [decode_transfer(data) for _, calls in self.sent for _, data in calls]


class FakeIdentities:
    def __init__(self, mapping: Optional[dict[str, str]] = None) -> None:
        self.mapping = {k.lower(): v for k, v in (mapping or {}).items()}
        self.calls: list[str] = []

    async def resolve_wallet(self, identity: str):
        self.calls.append(identity)
        return self.mapping.get(identity.lower())


class FakeHolders:
    def __init__(self, sets: Optional[dict[str, set[str]]] = None) -> None:
        self.sets = sets or {}
        self.calls: list[str] = []

    async def discover_holders(self, contract: str) -> set[str]:
        self.calls.append(contract)
        return set(self.sets.get(contract.lower(), set()))


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def identities():
    return FakeIdentities()


@pytest.fixture
def holders():
    return FakeHolders({NFT: {addr(1), addr(2), addr(3)}})


@pytest.fixture
def executor(chain):
    return DistributionExecutor(chain, TREASURY, retries=4, retry_delay=0, receipt_timeout=5)


@pytest.fixture
def repo():
    return InMemoryAirdropRepository()


@pytest.fixture
def make_lifecycle(repo, chain, holders, identities, executor):
    def _make(**overrides):
        kwargs = dict(
            repo=repo,
            chain=chain,
            holders=holders,
            resolver=RecipientResolver(identities, TREASURY, bot_id="bot-1"),
            executor=executor,
            treasury_address=TREASURY,
            admin_tax_address=ADMIN,
            tax_nft_address="",
            default_tax_percent=2,
            default_admin_tax_percent=1,
            batch_size=2,
            join_grace_delay=0,
        )
        kwargs.update(overrides)
        return AirdropLifecycle(**kwargs)

    return _make
