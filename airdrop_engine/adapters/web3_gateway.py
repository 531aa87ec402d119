import asyncio
import logging
from typing import Optional

import aiohttp
from eth_abi import encode, decode
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import (
    ContractLogicError, BadFunctionCallOutput, TimeExhausted, TransactionNotFound, Web3Exception,
)
from web3.types import TxParams

from airdrop_engine.adapters.multicall import MulticallClient
from airdrop_engine.adapters.node_pool import Web3NodePool
from airdrop_engine.errors import ConfigurationError, TransientChainError, LogRangeTooLarge
from airdrop_engine.ports import ChainReader, ChainWriter, Call, Receipt, LogEntry
from airdrop_engine.utils.addresses import to_checksum
from airdrop_engine.utils.rate_limiter import RateLimiter

log = logging.getLogger("web3_gateway")

# ERC-7821 minimal batch executor on the treasury smart account
EXECUTE_SELECTOR = AsyncWeb3.keccak(text="execute(bytes32,bytes)")[:4]
SUPPORTS_MODE_SELECTOR = AsyncWeb3.keccak(text="supportsExecutionMode(bytes32)")[:4]
BATCH_EXECUTION_MODE = bytes.fromhex("01" + "00" * 31)

KNOWN_TOO_MANY_LOGS = (
    "query returned more than",  # Infura/Alchemy-style
    "Response size exceeded",
    "Log response size exceeded",
    "block range is too wide",
    "exceed maximum block range",
)
ERROR_CODE_TOO_MANY_LOGS = -32005

RETRYABLE = (BadFunctionCallOutput, Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError)


def encode_execute_batch(calls: list[Call]) -> bytes:
    execution_data = encode(
        ["(address,uint256,bytes)[]"],
        [[(to_checksum(target), 0, data) for target, data in calls]],
    )
    return EXECUTE_SELECTOR + encode(["bytes32", "bytes"], [BATCH_EXECUTION_MODE, execution_data])


def _too_many_logs(e: Exception) -> bool:
    code = getattr(e, "code", None)
    if code is None and e.args and isinstance(e.args[0], dict):
        code = e.args[0].get("code")
    msg = str(e)
    return code == ERROR_CODE_TOO_MANY_LOGS or any(t in msg for t in KNOWN_TOO_MANY_LOGS)


class Web3ChainGateway(ChainReader, ChainWriter):
    def __init__(
            self,
            node_pool: Web3NodePool,
            limiter: RateLimiter,
            multicall: MulticallClient,
            retries: int,
            base_delay: float,
            call_timeout: float = 15.0,
            signer_key: str = "",
            chain_id: Optional[int] = None,
            gas_multiplier: float = 1.15,
    ) -> None:
        self._nodes = node_pool
        self._limiter = limiter
        self._multicall = multicall
        self._retries = max(0, int(retries))
        self._base_delay = float(base_delay)
        self._call_timeout = float(call_timeout)
        self._account = Account.from_key(signer_key) if signer_key else None
        self._chain_id = chain_id
        self._gas_multiplier = float(gas_multiplier)
        self._send_lock = asyncio.Lock()

    async def _retry(self, fn, label: str):
        last_exc: Optional[Exception] = None
        for attempt in range(self._retries + 1):
            await self._limiter.acquire()
            w3 = await self._nodes.next_client()
            try:
                return await asyncio.wait_for(fn(w3), timeout=self._call_timeout)
            except ContractLogicError:
                # a revert is an answer, not an outage
                raise
            except RETRYABLE as e:
                last_exc = e
                if attempt < self._retries:
                    delay = self._base_delay * (2 ** attempt)
                    log.info(f"retry {label} attempt={attempt + 1}/{self._retries} delay={delay:.2f}s err={e!r}")
                    await asyncio.sleep(delay)
        raise TransientChainError(f"{label} failed: {last_exc!r}") from last_exc

    # --- reads

    async def call(self, target: str, data: bytes) -> bytes:
        addr = to_checksum(target)

        async def _call(w3: AsyncWeb3):
            return bytes(await w3.eth.call({"to": addr, "data": data}))

        return await self._retry(_call, f"call({addr})")

    async def batch_call(self, calls: list[Call], allow_failure: bool = True) -> list[tuple[bool, bytes]]:
        async def _aggregate(w3: AsyncWeb3):
            return await self._multicall.aggregate3(w3, calls, allow_failure)

        return await self._retry(_aggregate, f"aggregate3({len(calls)} calls)")

    async def get_logs(self, address: str, topics: list, from_block: int, to_block: int) -> list[LogEntry]:
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": to_checksum(address),
            "topics": topics,
        }
        await self._limiter.acquire()
        w3 = await self._nodes.next_client()
        try:
            logs = await asyncio.wait_for(w3.eth.get_logs(params), timeout=self._call_timeout)
        except Exception as e:
            if _too_many_logs(e):
                raise LogRangeTooLarge(f"getLogs [{from_block}, {to_block}]: {e}") from e
            raise
        return [dict(entry) for entry in logs]

    async def block_number(self) -> int:
        async def _head(w3: AsyncWeb3):
            return int(await w3.eth.block_number)

        return await self._retry(_head, "block_number")

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        async def _receipt(w3: AsyncWeb3):
            try:
                return dict(await w3.eth.get_transaction_receipt(tx_hash))
            except TransactionNotFound:
                return None

        return await self._retry(_receipt, f"receipt({tx_hash})")

    # --- writes

    async def supports_batched_execution(self, account: str) -> bool:
        addr = to_checksum(account)

        async def _code(w3: AsyncWeb3):
            return bytes(await w3.eth.get_code(addr))

        if not await self._retry(_code, f"code({addr})"):
            log.warning(f"{addr} has no code, batched execution unavailable")
            return False
        try:
            raw = await self.call(addr, SUPPORTS_MODE_SELECTOR + BATCH_EXECUTION_MODE)
        except ContractLogicError:
            return False
        if len(raw) < 32:
            return False
        return bool(decode(["bool"], raw[:32])[0])

    async def _suggest_fees(self, w3: AsyncWeb3) -> tuple[int, int]:
        try:
            prio = int(await w3.eth.max_priority_fee)
        except RETRYABLE:
            prio = AsyncWeb3.to_wei(1, "gwei")
        block = await w3.eth.get_block("pending")
        base = int(block.get("baseFeePerGas", AsyncWeb3.to_wei(1, "gwei")))
        return int(base * 1.4) + prio, prio

    async def execute_batch(self, account: str, calls: list[Call]) -> str:
        if self._account is None:
            raise ConfigurationError("no signing key configured for the treasury")
        target = to_checksum(account)
        if self._account.address.lower() != target.lower():
            raise ConfigurationError(f"signing key belongs to {self._account.address}, not the treasury {target}")

        w3 = self._nodes.primary
        async with self._send_lock:
            await self._limiter.acquire()
            chain_id = self._chain_id or int(await w3.eth.chain_id)
            nonce = int(await w3.eth.get_transaction_count(self._account.address, "pending"))
            max_fee, prio = await self._suggest_fees(w3)
            tx: TxParams = {
                "chainId": chain_id,
                "to": target,
                "nonce": nonce,
                "type": 2,
                "value": 0,
                "maxFeePerGas": max_fee,
                "maxPriorityFeePerGas": prio,
                "data": encode_execute_batch(calls),
            }
            est = int(await w3.eth.estimate_gas({**tx, "from": self._account.address}))
            tx["gas"] = int(est * self._gas_multiplier)

            signed = Account.sign_transaction(tx, self._account.key)
            txh = await w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hash = txh.to_0x_hex()
        log.info(f"execute({len(calls)} calls) sent nonce={nonce} gas={tx['gas']} tx={tx_hash}")
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        w3 = self._nodes.primary
        try:
            receipt = await w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=2.0)
        except TimeExhausted as e:
            raise TransientChainError(f"no receipt for {tx_hash} within {timeout:.0f}s") from e
        return dict(receipt)
