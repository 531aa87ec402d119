# services/lifecycle.py
from __future__ import annotations

import asyncio
import inspect
import logging
from functools import partial
from typing import Callable, Optional, Protocol

from eth_abi import decode
from web3 import AsyncWeb3

from airdrop_engine.errors import (
    ValidationError, NotFoundError, CapacityError, ConfigurationError, PartialDistributionFailure,
)
from airdrop_engine.models import (
    Airdrop, AirdropStatus, AirdropType, CreateAirdropRequest, DistributionEvent, DistributionResult,
    AddressIdentity, LEG_NET, LEG_TAX, LEG_ADMIN,
)
from airdrop_engine.ports import AirdropRepository, ChainReader, Receipt
from airdrop_engine.services.batching import plan
from airdrop_engine.services.executor import DistributionExecutor
from airdrop_engine.services.recipients import RecipientResolver, parse_identity
from airdrop_engine.services.tax import compute_tax, amount_per_recipient
from airdrop_engine.utils.addresses import normalize_address, extract_address_from_encoded_id, is_valid_address

log = logging.getLogger("lifecycle")

ERC20_TRANSFER_TOPIC = AsyncWeb3.keccak(text="Transfer(address,address,uint256)").to_0x_hex()

Observer = Callable[[DistributionEvent], object]


class HolderSource(Protocol):
    async def discover_holders(self, contract: str) -> set[str]: ...


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    s = str(value).lower()
    return s if s.startswith("0x") else "0x" + s


def deposited_amount(receipt: Receipt, token: str, treasury: str) -> int:
    """Sum of ERC-20 Transfer(_, treasury, value) events emitted by `token` in the receipt."""
    total = 0
    for entry in receipt.get("logs") or []:
        topics = entry.get("topics") or []
        if len(topics) != 3 or _hex(topics[0]) != ERC20_TRANSFER_TOPIC:
            continue
        if str(entry.get("address", "")).lower() != token:
            continue
        if "0x" + _hex(topics[2])[-40:] != treasury:
            continue
        data = entry.get("data") or b""
        raw = bytes.fromhex(_hex(data)[2:])
        if len(raw) >= 32:
            total += int(decode(["uint256"], raw[:32])[0])
    return total


def tax_legs(airdrop: Airdrop, admin_address: str) -> list[tuple[str, list[str], int]]:
    """(leg, recipients, amount each) for the holder-tax and admin-tax payouts that can be made."""
    legs = []
    if airdrop.tax_amount > 0:
        per_holder = amount_per_recipient(airdrop.tax_amount, len(airdrop.tax_holders))
        if per_holder > 0:
            legs.append((LEG_TAX, list(airdrop.tax_holders), per_holder))
        else:
            log.warning(f"airdrop {airdrop.id}: holder tax {airdrop.tax_amount} has no payable holders")
    if airdrop.admin_tax_amount > 0:
        if is_valid_address(admin_address):
            legs.append((LEG_ADMIN, [admin_address.lower()], airdrop.admin_tax_amount))
        else:
            log.warning(f"airdrop {airdrop.id}: admin tax {airdrop.admin_tax_amount} has no admin address")
    return legs


class AirdropLifecycle:
    """
    Owns every Airdrop record and drives it through
    pending -> funded -> distributing -> completed | funded (rollback),
    with cancelled reachable from pending and funded.

    All mutations of one airdrop are serialised by a per-airdrop lock; the
    funded -> distributing step happens under it, so at most one
    distribution run per airdrop exists at a time.
    """

    def __init__(
            self,
            repo: AirdropRepository,
            chain: ChainReader,
            holders: HolderSource,
            resolver: RecipientResolver,
            executor: DistributionExecutor,
            treasury_address: str,
            admin_tax_address: str = "",
            tax_nft_address: str = "",
            default_tax_percent: float = 2.0,
            default_admin_tax_percent: float = 1.0,
            batch_size: int = 80,
            join_grace_delay: float = 5.0,
    ) -> None:
        self._repo = repo
        self._chain = chain
        self._holders = holders
        self._resolver = resolver
        self._executor = executor
        self._treasury = (treasury_address or "").lower()
        self._admin_address = (admin_tax_address or "").lower()
        self._tax_nft = (tax_nft_address or "").lower()
        self._default_tax = float(default_tax_percent)
        self._default_admin_tax = float(default_admin_tax_percent)
        self._batch_size = int(batch_size)
        self._grace = float(join_grace_delay)

        self._locks: dict[str, asyncio.Lock] = {}
        self._runs: dict[str, asyncio.Task] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._observers: list[Observer] = []

    # ------------------------------------------------------------ queries

    async def get(self, airdrop_id: str) -> Airdrop:
        return (await self._load(airdrop_id)).copy()

    async def list_by_creator(self, creator_address: str) -> list[Airdrop]:
        return await self._repo.list_by_creator(creator_address.lower())

    async def list_open_joinable(self) -> list[Airdrop]:
        return await self._repo.list_open_joinable()

    def is_running(self, airdrop_id: str) -> bool:
        task = self._runs.get(airdrop_id)
        return task is not None and not task.done()

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    async def wait_idle(self) -> None:
        """Waits for scheduled launches and in-flight distribution runs."""
        while True:
            pending = [t for t in (*self._timers.values(), *self._runs.values()) if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------ commands

    async def create_airdrop(self, req: CreateAirdropRequest) -> Airdrop:
        creator = normalize_address(req.creator_address)
        currency = normalize_address(req.currency)
        try:
            airdrop_type = AirdropType(req.airdrop_type)
        except ValueError as e:
            raise ValidationError(f"unknown airdrop type: {req.airdrop_type!r}") from e
        total = int(req.total_amount)
        if total <= 0:
            raise ValidationError(f"amount must be positive, got {total}")
        if req.max_participants < 0:
            raise ValidationError("max participants cannot be negative")
        if not self._treasury:
            raise ConfigurationError("treasury address is not configured")

        nft = None
        if airdrop_type == AirdropType.SCOPED:
            if req.nft_address:
                nft = normalize_address(req.nft_address)
            elif req.space_id:
                nft = extract_address_from_encoded_id(req.space_id)
            if not nft:
                raise ValidationError("scoped airdrop needs an NFT contract address or a space id")

        tax_holders = await self._tax_holder_snapshot()
        holder_pct = self._default_tax if req.tax_percent is None else float(req.tax_percent)
        admin_pct = self._default_admin_tax if req.admin_tax_percent is None else float(req.admin_tax_percent)
        if not tax_holders:
            holder_pct = 0.0
        if not self._admin_address:
            admin_pct = 0.0
        split = compute_tax(total, holder_pct, admin_pct, admin_enabled=bool(self._admin_address))

        airdrop = Airdrop(
            creator_address=creator,
            airdrop_type=airdrop_type,
            currency=currency,
            currency_decimals=int(req.currency_decimals),
            currency_symbol=req.currency_symbol,
            total_amount=total,
            nft_address=nft,
            tax_percent=holder_pct,
            tax_amount=split.holder_tax,
            admin_tax_percent=admin_pct,
            admin_tax_amount=split.admin_tax,
            net_amount=split.net,
            tax_holders=tax_holders,
            max_participants=int(req.max_participants),
            title=req.title,
            description=req.description,
        )

        if airdrop_type == AirdropType.SCOPED and not airdrop.join_mode:
            holders = await self._holders.discover_holders(nft)
            participants = await self._resolver.resolve_unique_recipients(
                sorted(holders), exclude=[creator, *req.exclude],
            )
            if not participants:
                raise ValidationError(f"no eligible recipients hold {nft}")
            airdrop.set_participants(participants)

        created = await self._repo.create(airdrop)
        log.info(f"created {created.airdrop_type.value} airdrop {created.id}: total={created.total_amount} "
                 f"net={created.net_amount} recipients={created.recipient_count}")
        return created.copy()

    async def confirm_deposit(self, airdrop_id: str, tx_hash: str) -> Airdrop:
        tx_hash = (tx_hash or "").strip().lower()
        if not tx_hash:
            raise ValidationError("deposit tx hash is required")
        async with self._lock(airdrop_id):
            airdrop = await self._load(airdrop_id)
            if airdrop.status != AirdropStatus.PENDING:
                raise ValidationError(f"airdrop {airdrop_id} is {airdrop.status.value}, deposit expects pending")
            other = await self._repo.find_by_deposit_tx(tx_hash)
            if other is not None and other.id != airdrop_id:
                raise ValidationError(f"tx {tx_hash} already funded airdrop {other.id}")

            receipt = await self._chain.get_receipt(tx_hash)
            if receipt is None:
                raise ValidationError(f"deposit tx {tx_hash} is not mined yet")
            if int(receipt.get("status", 0)) != 1:
                raise ValidationError(f"deposit tx {tx_hash} failed on chain")
            received = deposited_amount(receipt, airdrop.currency, self._treasury)
            if received < airdrop.total_amount:
                raise ValidationError(
                    f"deposit tx {tx_hash} moved {received} of {airdrop.total_amount} to the treasury")

            airdrop.status = AirdropStatus.FUNDED
            airdrop.deposit_tx_hash = tx_hash
            airdrop.touch()
            await self._repo.update(airdrop)
            log.info(f"airdrop {airdrop_id} funded by {tx_hash}")

            if airdrop.airdrop_type == AirdropType.SCOPED and not airdrop.join_mode and airdrop.recipient_count:
                airdrop = await self._begin_distribution(airdrop)
            return airdrop.copy()

    async def join(self, airdrop_id: str, wallet_or_identity) -> Airdrop:
        identity = parse_identity(wallet_or_identity)
        async with self._lock(airdrop_id):
            airdrop = await self._load(airdrop_id)
            if airdrop.status != AirdropStatus.FUNDED:
                raise ValidationError(f"airdrop {airdrop_id} is {airdrop.status.value}, joins need funded")
            if not airdrop.join_mode:
                raise ValidationError(f"airdrop {airdrop_id} does not take joins")
            if airdrop.batch_progress.get(LEG_NET) or airdrop.pending_tx.get(LEG_NET):
                raise ValidationError(f"airdrop {airdrop_id} is partially paid out, joins are closed")
            if airdrop.is_full:
                raise CapacityError(f"airdrop {airdrop_id} is full ({airdrop.max_participants})")

            rec = await self._resolver.resolve(identity, exclude=[airdrop.creator_address])
            if rec is None:
                raise ValidationError("identity is excluded or has no wallet")
            if rec.address in airdrop.participants:
                raise ValidationError(f"{rec.address} already joined")
            if airdrop.airdrop_type == AirdropType.SCOPED:
                holders = await self._holders.discover_holders(airdrop.nft_address)
                raw = identity.address.lower() if isinstance(identity, AddressIdentity) else identity.value.lower()
                if rec.address not in holders and raw not in holders:
                    raise ValidationError(f"{rec.address} does not hold {airdrop.nft_address}")

            airdrop.set_participants([*airdrop.participants, rec.address])
            airdrop.touch()
            await self._repo.update(airdrop)
            log.info(f"{rec.address} joined {airdrop_id} ({airdrop.recipient_count}"
                     f"/{airdrop.max_participants or '-'}), {airdrop.amount_per_recipient} each")

            if airdrop.is_full:
                self._schedule_launch(airdrop_id)
            return airdrop.copy()

    async def launch(self, airdrop_id: str) -> Airdrop:
        async with self._lock(airdrop_id):
            airdrop = await self._load(airdrop_id)
            return (await self._begin_distribution(airdrop)).copy()

    async def resume(self, airdrop_id: str) -> Airdrop:
        """Restarts a run left in distributing by a previous process; confirmed batches are skipped."""
        async with self._lock(airdrop_id):
            airdrop = await self._load(airdrop_id)
            if airdrop.status != AirdropStatus.DISTRIBUTING or self.is_running(airdrop_id):
                raise ValidationError(f"airdrop {airdrop_id} has no interrupted distribution")
            self._spawn_run(airdrop_id)
            return airdrop.copy()

    async def cancel(self, airdrop_id: str) -> Airdrop:
        async with self._lock(airdrop_id):
            airdrop = await self._load(airdrop_id)
            if airdrop.status not in (AirdropStatus.PENDING, AirdropStatus.FUNDED) or self.is_running(airdrop_id):
                raise ValidationError(f"airdrop {airdrop_id} is {airdrop.status.value} and cannot be cancelled")
            timer = self._timers.pop(airdrop_id, None)
            if timer is not None:
                timer.cancel()
            if airdrop.status == AirdropStatus.FUNDED:
                log.warning(f"airdrop {airdrop_id} cancelled with {airdrop.total_amount} still in the treasury")
            airdrop.status = AirdropStatus.CANCELLED
            airdrop.touch()
            await self._repo.update(airdrop)
            return airdrop.copy()

    # ------------------------------------------------------------ distribution

    async def run_distribution(self, airdrop_id: str) -> DistributionEvent:
        airdrop = await self._load(airdrop_id)
        if airdrop.status != AirdropStatus.DISTRIBUTING:
            raise ValidationError(f"airdrop {airdrop_id} is {airdrop.status.value}, not distributing")

        legs: dict[str, DistributionResult] = {}
        try:
            net = await self._run_leg(airdrop, LEG_NET, airdrop.participants, airdrop.amount_per_recipient)
        except Exception as e:
            log.exception(f"airdrop {airdrop_id}: net payout crashed")
            net = DistributionResult(ok=False, error=repr(e))
        legs[LEG_NET] = net

        if not net.ok:
            await self._mutate(airdrop_id, partial(self._rollback, error=net.error))
            log.error(f"airdrop {airdrop_id}: net payout failed, back to funded: {net.error}")
            return await self._publish(DistributionEvent(airdrop_id, AirdropStatus.FUNDED, False, net.error, legs))

        await self._mutate(airdrop_id, partial(self._complete, tx_hash=net.last_tx_hash))
        log.info(f"airdrop {airdrop_id} completed, last tx {net.last_tx_hash}")

        failures = []
        for leg, recipients, amount in tax_legs(airdrop, self._admin_address):
            try:
                res = await self._run_leg(airdrop, leg, recipients, amount)
            except Exception as e:
                log.exception(f"airdrop {airdrop_id}: {leg} payout crashed")
                res = DistributionResult(ok=False, error=repr(e))
            legs[leg] = res
            if res.ok:
                await self._mutate(airdrop_id, partial(self._record_tax_tx, leg=leg, tx_hash=res.last_tx_hash))
            else:
                failure = PartialDistributionFailure(airdrop_id, leg, res.error or "unknown error")
                log.error(str(failure))
                failures.append(str(failure))

        error = "; ".join(failures) or None
        return await self._publish(DistributionEvent(airdrop_id, AirdropStatus.COMPLETED, True, error, legs))

    async def _run_leg(self, airdrop: Airdrop, leg: str, recipients: list[str], amount: int) -> DistributionResult:
        batches = plan(recipients, self._batch_size, amount)
        start = int(airdrop.batch_progress.get(leg, 0))
        if start:
            log.info(f"airdrop {airdrop.id}: {leg} resumes at batch {start + 1}/{len(batches)}")

        async def sent(index: int, tx_hash: str) -> None:
            await self._mutate(airdrop.id, partial(self._record_sent, leg=leg, tx_hash=tx_hash))

        async def persist(confirmed: int, tx_hash: str) -> None:
            await self._mutate(airdrop.id, partial(
                self._record_progress, leg=leg, confirmed=confirmed, tx_hash=tx_hash))

        try:
            return await self._executor.execute_batches(
                batches, amount, self._treasury, airdrop.currency,
                start_batch=start, on_batch_confirmed=persist, label=f"{airdrop.id[:8]}/{leg}",
                on_batch_sent=sent, in_flight_tx=airdrop.pending_tx.get(leg),
                last_tx_hash=airdrop.confirmed_tx.get(leg),
            )
        except ConfigurationError as e:
            log.error(f"airdrop {airdrop.id}: {leg} payout misconfigured: {e}")
            return DistributionResult(ok=False, error=str(e), confirmed_batches=start)

    @staticmethod
    def _rollback(airdrop: Airdrop, error: Optional[str]) -> None:
        airdrop.status = AirdropStatus.FUNDED
        airdrop.last_error = error

    @staticmethod
    def _complete(airdrop: Airdrop, tx_hash: Optional[str]) -> None:
        airdrop.status = AirdropStatus.COMPLETED
        airdrop.distribution_tx_hash = tx_hash
        airdrop.last_error = None

    @staticmethod
    def _record_tax_tx(airdrop: Airdrop, leg: str, tx_hash: Optional[str]) -> None:
        if leg == LEG_TAX:
            airdrop.tax_distribution_tx_hash = tx_hash
        else:
            airdrop.admin_tax_distribution_tx_hash = tx_hash

    @staticmethod
    def _record_sent(airdrop: Airdrop, leg: str, tx_hash: str) -> None:
        airdrop.pending_tx[leg] = tx_hash

    @staticmethod
    def _record_progress(airdrop: Airdrop, leg: str, confirmed: int, tx_hash: str) -> None:
        airdrop.batch_progress[leg] = confirmed
        airdrop.confirmed_tx[leg] = tx_hash
        airdrop.pending_tx.pop(leg, None)

    # ------------------------------------------------------------ internals

    def _lock(self, airdrop_id: str) -> asyncio.Lock:
        return self._locks.setdefault(airdrop_id, asyncio.Lock())

    async def _load(self, airdrop_id: str) -> Airdrop:
        airdrop = await self._repo.get(airdrop_id)
        if airdrop is None:
            raise NotFoundError(f"airdrop {airdrop_id} not found")
        return airdrop

    async def _mutate(self, airdrop_id: str, fn: Callable[[Airdrop], None]) -> Airdrop:
        async with self._lock(airdrop_id):
            airdrop = await self._load(airdrop_id)
            fn(airdrop)
            airdrop.touch()
            return await self._repo.update(airdrop)

    async def _tax_holder_snapshot(self) -> list[str]:
        if not self._tax_nft:
            return []
        holders = await self._holders.discover_holders(self._tax_nft)
        return await self._resolver.resolve_unique_recipients(sorted(holders))

    async def _begin_distribution(self, airdrop: Airdrop) -> Airdrop:
        """Caller holds the airdrop lock."""
        if airdrop.status != AirdropStatus.FUNDED:
            raise ValidationError(f"airdrop {airdrop.id} is {airdrop.status.value}, launch needs funded")
        if airdrop.recipient_count == 0:
            raise ValidationError(f"airdrop {airdrop.id} has no recipients")
        if self.is_running(airdrop.id):
            raise ValidationError(f"airdrop {airdrop.id} is already distributing")

        airdrop.status = AirdropStatus.DISTRIBUTING
        airdrop.last_error = None
        airdrop.touch()
        await self._repo.update(airdrop)

        self._spawn_run(airdrop.id)
        log.info(f"airdrop {airdrop.id}: distributing {airdrop.net_amount} to {airdrop.recipient_count} recipients")
        return airdrop

    def _spawn_run(self, airdrop_id: str) -> None:
        task = asyncio.create_task(self.run_distribution(airdrop_id), name=f"distribute-{airdrop_id}")
        self._runs[airdrop_id] = task
        task.add_done_callback(partial(self._on_run_done, airdrop_id))

    def _on_run_done(self, airdrop_id: str, task: asyncio.Task) -> None:
        if self._runs.get(airdrop_id) is task:
            del self._runs[airdrop_id]
        if task.cancelled():
            log.warning(f"airdrop {airdrop_id}: distribution task cancelled")
            return
        exc = task.exception()
        if exc is not None:
            log.error(f"airdrop {airdrop_id}: distribution task died: {exc!r}")

    def _schedule_launch(self, airdrop_id: str) -> None:
        if airdrop_id in self._timers and not self._timers[airdrop_id].done():
            return

        async def delayed() -> None:
            # lets a final burst of joins settle before the payout is sized
            await asyncio.sleep(self._grace)
            try:
                await self.launch(airdrop_id)
            except ValidationError as e:
                log.info(f"airdrop {airdrop_id}: auto launch skipped: {e}")
            finally:
                self._timers.pop(airdrop_id, None)

        self._timers[airdrop_id] = asyncio.create_task(delayed(), name=f"launch-{airdrop_id}")

    async def _publish(self, event: DistributionEvent) -> DistributionEvent:
        for observer in list(self._observers):
            try:
                res = observer(event)
                if inspect.isawaitable(res):
                    await res
            except Exception as e:
                log.warning(f"observer {observer!r} failed on {event.airdrop_id}: {e!r}")
        return event
