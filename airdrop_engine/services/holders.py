# services/holders.py
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from eth_abi import encode, decode
from tqdm import tqdm
from web3 import AsyncWeb3

from airdrop_engine.errors import LogRangeTooLarge
from airdrop_engine.ports import ChainReader, HolderCache, LogEntry
from airdrop_engine.utils.addresses import ZERO_ADDRESS, normalize_address
from airdrop_engine.utils.retry import retry_async

log = logging.getLogger("holders")

TOTAL_SUPPLY_SELECTOR = AsyncWeb3.keccak(text="totalSupply()")[:4]
OWNER_OF_SELECTOR = AsyncWeb3.keccak(text="ownerOf(uint256)")[:4]
TRANSFER_TOPIC = AsyncWeb3.keccak(text="Transfer(address,address,uint256)").to_0x_hex()
# ERC-2309 batch mint
CONSECUTIVE_TRANSFER_TOPIC = AsyncWeb3.keccak(text="ConsecutiveTransfer(uint256,uint256,address,address)").to_0x_hex()


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    s = str(value).lower()
    return s if s.startswith("0x") else "0x" + s


def _word_int(value) -> int:
    return int(_hex(value), 16)


def _word_address(value) -> str:
    return "0x" + _hex(value)[-40:]


def _log_position(entry: LogEntry) -> tuple[int, int]:
    return int(entry.get("blockNumber") or 0), int(entry.get("logIndex") or 0)


def encode_owner_of(token_id: int) -> bytes:
    return OWNER_OF_SELECTOR + encode(["uint256"], [token_id])


class HolderDiscoveryService:
    """
    Current owner set of an ERC-721 collection.

    Primary path: totalSupply() + ownerOf(id) through multicall, ids in
    chunks, under a timeout with a fixed-delay retry. Fallback path, only
    when the primary path finds nobody: replay Transfer / ConsecutiveTransfer
    logs from genesis to head, window by window.
    """

    def __init__(
            self,
            chain: ChainReader,
            batch_size: int = 256,
            timeout: float = 30.0,
            retries: int = 3,
            retry_delay: float = 3.0,
            logs_chunk: int = 5_000,
            logs_max_retries: int = 4,
            logs_backoff: float = 0.5,
            show_progress: bool = False,
    ) -> None:
        self._chain = chain
        self._batch = max(1, int(batch_size))
        self._timeout = timeout
        self._retries = max(1, int(retries))
        self._retry_delay = float(retry_delay)
        self._logs_chunk = max(1, int(logs_chunk))
        self._logs_max_retries = max(0, int(logs_max_retries))
        self._logs_backoff = float(logs_backoff)
        self._show_progress = show_progress

    async def discover_holders(self, contract: str) -> set[str]:
        addr = normalize_address(contract)
        holders = await retry_async(
            lambda: self._enumerate_holders(addr),
            label=f"enumerate({addr})",
            attempts=self._retries,
            delay=self._retry_delay,
            timeout=self._timeout,
            accept=bool,
        )
        if holders:
            log.info(f"{addr}: {len(holders)} holders via ownerOf enumeration")
            return holders

        log.warning(f"{addr}: enumeration found no holders, replaying transfer logs")
        try:
            holders = await self._scan_transfer_logs(addr)
        except Exception as e:
            log.error(f"{addr}: transfer log replay failed: {e!r}")
            return set()
        if not holders:
            log.warning(f"{addr}: no holders found")
        else:
            log.info(f"{addr}: {len(holders)} holders via transfer logs")
        return holders

    # --- primary path

    async def _total_supply(self, contract: str) -> int:
        raw = await self._chain.call(contract, TOTAL_SUPPLY_SELECTOR)
        return int(decode(["uint256"], bytes(raw))[0])

    async def _enumerate_holders(self, contract: str) -> set[str]:
        supply = await self._total_supply(contract)
        if supply <= 0:
            return set()
        # collections disagree on whether the first token id is 1 or 0
        for origin in (1, 0):
            holders = await self._owners_in_range(contract, origin, origin + supply)
            if holders:
                return holders
            log.debug(f"{contract}: no owners for ids starting at {origin}")
        return set()

    async def _owners_in_range(self, contract: str, lo: int, hi: int) -> set[str]:
        holders: set[str] = set()
        for start in range(lo, hi, self._batch):
            ids = range(start, min(hi, start + self._batch))
            calls = [(contract, encode_owner_of(i)) for i in ids]
            results = await self._chain.batch_call(calls, allow_failure=True)
            for ok, ret in results:
                # nonexistent or burned ids revert; the batch carries on
                if not ok or len(ret) < 32:
                    continue
                owner = "0x" + bytes(ret[12:32]).hex()
                if owner != ZERO_ADDRESS:
                    holders.add(owner)
        return holders

    # --- fallback path

    async def _scan_transfer_logs(self, contract: str) -> set[str]:
        head = await self._chain.block_number()
        windows = [(frm, min(head, frm + self._logs_chunk - 1)) for frm in range(0, head + 1, self._logs_chunk)]
        owners: dict[int, str] = {}
        # windows must be folded in chain order
        for frm, to in tqdm(windows, desc=f"Replaying {contract[:10]} logs", disable=not self._show_progress):
            entries = await self._fetch_logs_range(contract, frm, to)
            for entry in sorted(entries, key=_log_position):
                self._fold(owners, entry)
        return set(owners.values())

    async def _fetch_logs_range(self, contract: str, frm: int, to: int) -> list[LogEntry]:
        """Logs for [frm, to] with retries; halves the range when the node refuses it."""
        attempt = 0
        topics = [[TRANSFER_TOPIC, CONSECUTIVE_TRANSFER_TOPIC]]
        while True:
            try:
                return list(await self._chain.get_logs(contract, topics, frm, to))
            except LogRangeTooLarge:
                if frm == to:
                    raise
                mid = (frm + to) // 2
                left = await self._fetch_logs_range(contract, frm, mid)
                right = await self._fetch_logs_range(contract, mid + 1, to)
                return left + right
            except Exception as e:
                if attempt >= self._logs_max_retries:
                    raise
                delay = self._logs_backoff * (2 ** attempt)
                log.info(f"getLogs [{frm}, {to}] attempt={attempt + 1} delay={delay:.2f}s err={e!r}")
                await asyncio.sleep(delay)
                attempt += 1

    @staticmethod
    def _fold(owners: dict[int, str], entry: LogEntry) -> None:
        topics = entry.get("topics") or []
        if len(topics) != 4:
            # ERC-20 style Transfer has 3 topics and carries no token id
            return
        sig = _hex(topics[0])
        if sig == TRANSFER_TOPIC:
            first = last = _word_int(topics[3])
            to_addr = _word_address(topics[2])
        elif sig == CONSECUTIVE_TRANSFER_TOPIC:
            first = _word_int(topics[1])
            data = entry.get("data") or b""
            last = _word_int(data) if data not in (b"", "0x", "") else first
            to_addr = _word_address(topics[3])
        else:
            return
        for token_id in range(first, last + 1):
            if to_addr == ZERO_ADDRESS:
                owners.pop(token_id, None)
            else:
                owners[token_id] = to_addr


class CachedHolderDiscovery:
    """Holder sets are reused for `ttl` seconds; empty results are never cached."""

    def __init__(self, discovery: HolderDiscoveryService, cache: HolderCache, ttl: float) -> None:
        self._discovery = discovery
        self._cache = cache
        self._ttl = float(ttl)
        self._locks: dict[str, asyncio.Lock] = {}

    async def discover_holders(self, contract: str, refresh: bool = False) -> set[str]:
        addr = normalize_address(contract)
        lock = self._locks.setdefault(addr, asyncio.Lock())
        async with lock:
            if not refresh:
                cached: Optional[set[str]] = await self._cache.get_holders(addr, self._ttl)
                if cached is not None:
                    log.debug(f"{addr}: {len(cached)} holders from cache")
                    return set(cached)
            holders = await self._discovery.discover_holders(addr)
            if holders:
                await self._cache.save_holders(addr, holders)
            return holders

    async def is_holder(self, contract: str, wallet: str) -> bool:
        return wallet.lower() in await self.discover_holders(contract)
