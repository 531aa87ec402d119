# services/executor.py
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from eth_abi import encode
from web3 import AsyncWeb3

from airdrop_engine.errors import ConfigurationError, TransientChainError
from airdrop_engine.models import DistributionBatch, DistributionResult
from airdrop_engine.ports import ChainWriter, Call

log = logging.getLogger("executor")

TRANSFER_SELECTOR = AsyncWeb3.keccak(text="transfer(address,uint256)")[:4]

# (batch index or confirmed count, tx hash)
BatchCallback = Callable[[int, str], Awaitable[None]]


def encode_transfer(to: str, amount: int) -> bytes:
    return TRANSFER_SELECTOR + encode(["address", "uint256"], [to, int(amount)])


class DistributionExecutor:
    """
    Pays batches out of the treasury smart account, one execute() call per
    batch, each confirmed before the next is sent.

    A failed attempt is retried after a fixed delay. Batches confirmed on an
    earlier attempt are not sent again: the attempt resumes at the first
    unconfirmed batch, and a batch whose receipt wait timed out is looked up
    by its tx hash before being re-sent. `on_batch_sent` lets the caller persist
    that hash, and `in_flight_tx` hands it back to a later run.
    """

    def __init__(
            self,
            writer: ChainWriter,
            treasury_address: str,
            retries: int = 4,
            retry_delay: float = 2.0,
            receipt_timeout: float = 120.0,
    ) -> None:
        self._writer = writer
        self._treasury = (treasury_address or "").lower()
        self._retries = max(1, int(retries))
        self._retry_delay = float(retry_delay)
        self._receipt_timeout = float(receipt_timeout)

    async def execute_batches(
            self,
            batches: list[DistributionBatch],
            amount_per_recipient: int,
            from_treasury: str,
            token: str,
            start_batch: int = 0,
            on_batch_confirmed: Optional[BatchCallback] = None,
            label: str = "distribution",
            on_batch_sent: Optional[BatchCallback] = None,
            in_flight_tx: Optional[str] = None,
            last_tx_hash: Optional[str] = None,
    ) -> DistributionResult:
        if not self._treasury:
            raise ConfigurationError("treasury address is not configured")
        if (from_treasury or "").lower() != self._treasury:
            raise ConfigurationError(f"{label}: payer {from_treasury} is not the treasury {self._treasury}")

        next_batch = max(0, int(start_batch))
        if next_batch >= len(batches):
            return DistributionResult(ok=True, last_tx_hash=last_tx_hash, confirmed_batches=len(batches))
        if amount_per_recipient <= 0:
            return DistributionResult(ok=False, error="amount per recipient is zero", confirmed_batches=next_batch)

        # a tx sent by an earlier run for the next batch is looked up before anything is re-sent
        unconfirmed: dict[int, str] = {next_batch: in_flight_tx} if in_flight_tx else {}
        last_tx = last_tx_hash
        last_error = ""
        for attempt in range(1, self._retries + 1):
            try:
                if not await self._writer.supports_batched_execution(self._treasury):
                    raise TransientChainError(f"treasury {self._treasury} does not report batched execution support")
                while next_batch < len(batches):
                    batch = batches[next_batch]
                    last_tx = await self._run_batch(batch, amount_per_recipient, token, unconfirmed, on_batch_sent)
                    log.info(f"{label}: batch {next_batch + 1}/{len(batches)} "
                             f"({len(batch.recipients)} transfers) confirmed tx={last_tx}")
                    next_batch += 1
                    if on_batch_confirmed is not None:
                        await on_batch_confirmed(next_batch, last_tx)
                return DistributionResult(ok=True, last_tx_hash=last_tx, confirmed_batches=next_batch)
            except ConfigurationError:
                raise
            except Exception as e:
                last_error = str(e) or repr(e)
                log.warning(f"{label}: attempt {attempt}/{self._retries} stopped at batch "
                            f"{next_batch + 1}/{len(batches)}: {last_error}")
            if attempt < self._retries:
                await asyncio.sleep(self._retry_delay)

        log.error(f"{label}: giving up after {self._retries} attempts: {last_error}")
        return DistributionResult(ok=False, last_tx_hash=last_tx, error=last_error, confirmed_batches=next_batch)

    async def _run_batch(self, batch: DistributionBatch, amount: int, token: str,
                         unconfirmed: dict[int, str], on_sent: Optional[BatchCallback]) -> str:
        earlier = unconfirmed.get(batch.index)
        if earlier:
            # a receipt we stopped waiting for may have landed since
            receipt = await self._wait(earlier)
            unconfirmed.pop(batch.index, None)
            if int(receipt.get("status", 0)) == 1:
                return earlier
            log.warning(f"batch {batch.index + 1}: earlier tx {earlier} reverted, re-sending")

        calls: list[Call] = [(token, encode_transfer(to, amount)) for to in batch.recipients]
        tx_hash = await self._writer.execute_batch(self._treasury, calls)
        unconfirmed[batch.index] = tx_hash
        if on_sent is not None:
            await on_sent(batch.index, tx_hash)
        receipt = await self._wait(tx_hash)
        unconfirmed.pop(batch.index, None)
        if int(receipt.get("status", 0)) != 1:
            raise TransientChainError(f"batch {batch.index + 1} tx {tx_hash} reverted")
        return tx_hash

    async def _wait(self, tx_hash: str) -> dict:
        try:
            return await asyncio.wait_for(
                self._writer.wait_for_receipt(tx_hash, self._receipt_timeout),
                timeout=self._receipt_timeout + 5.0,
            )
        except asyncio.TimeoutError as e:
            raise TransientChainError(f"no receipt for {tx_hash} after {self._receipt_timeout:.0f}s") from e
