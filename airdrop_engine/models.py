from __future__ import annotations

import time
import uuid
from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Union


class AirdropType(str, Enum):
    SCOPED = "scoped"  # recipients = holders of an NFT collection
    OPEN = "open"  # recipients accrue through join()


class AirdropStatus(str, Enum):
    PENDING = "pending"
    FUNDED = "funded"
    DISTRIBUTING = "distributing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# payout legs, also the keys of Airdrop.batch_progress, pending_tx and confirmed_tx
LEG_NET = "net"
LEG_TAX = "tax"
LEG_ADMIN = "admin"

_INT_FIELDS = ("total_amount", "tax_amount", "admin_tax_amount", "net_amount", "amount_per_recipient")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Airdrop:
    creator_address: str
    airdrop_type: AirdropType
    currency: str
    currency_decimals: int
    total_amount: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    currency_symbol: str = ""
    nft_address: Optional[str] = None
    tax_percent: float = 0.0
    tax_amount: int = 0
    admin_tax_percent: float = 0.0
    admin_tax_amount: int = 0
    net_amount: int = 0
    amount_per_recipient: int = 0
    recipient_count: int = 0
    participants: list[str] = field(default_factory=list)
    tax_holders: list[str] = field(default_factory=list)
    max_participants: int = 0
    status: AirdropStatus = AirdropStatus.PENDING
    deposit_tx_hash: Optional[str] = None
    distribution_tx_hash: Optional[str] = None
    tax_distribution_tx_hash: Optional[str] = None
    admin_tax_distribution_tx_hash: Optional[str] = None
    batch_progress: dict[str, int] = field(default_factory=dict)
    # per leg: tx of the batch sent but not yet confirmed, and the last confirmed tx
    pending_tx: dict[str, str] = field(default_factory=dict)
    confirmed_tx: dict[str, str] = field(default_factory=dict)
    last_error: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    @property
    def join_mode(self) -> bool:
        """Open airdrops always fill by join; scoped ones do when capped."""
        return self.airdrop_type == AirdropType.OPEN or self.max_participants > 0

    @property
    def is_full(self) -> bool:
        return self.max_participants > 0 and self.recipient_count >= self.max_participants

    def set_participants(self, participants: list[str]) -> None:
        self.participants = list(participants)
        self.recipient_count = len(self.participants)
        self.amount_per_recipient = self.net_amount // self.recipient_count if self.recipient_count else 0

    def touch(self) -> None:
        self.updated_at = _now_ms()

    def copy(self) -> Airdrop:
        return Airdrop.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        d = asdict(self)
        d["airdrop_type"] = self.airdrop_type.value
        d["status"] = self.status.value
        for k in _INT_FIELDS:
            d[k] = str(d[k])  # uint256 does not fit JSON numbers
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Airdrop:
        data = dict(d)
        data["airdrop_type"] = AirdropType(data["airdrop_type"])
        data["status"] = AirdropStatus(data["status"])
        for k in _INT_FIELDS:
            data[k] = int(data.get(k) or 0)
        data["participants"] = list(data.get("participants") or [])
        data["tax_holders"] = list(data.get("tax_holders") or [])
        data["batch_progress"] = dict(data.get("batch_progress") or {})
        data["pending_tx"] = dict(data.get("pending_tx") or {})
        data["confirmed_tx"] = dict(data.get("confirmed_tx") or {})
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class AddressIdentity:
    address: str


@dataclass(frozen=True)
class ExternalIdentity:
    """An opaque user id that has to be mapped to a payable wallet."""
    value: str


Identity = Union[AddressIdentity, ExternalIdentity]


@dataclass(frozen=True)
class ResolvedRecipient:
    address: str
    source: Identity
    resolved: bool  # False when the identity already was an address


@dataclass(frozen=True)
class TaxSplit:
    holder_tax: int
    admin_tax: int
    net: int


@dataclass
class DistributionBatch:
    index: int
    recipients: list[str]
    amount: int  # per recipient


@dataclass
class DistributionResult:
    ok: bool
    last_tx_hash: Optional[str] = None
    error: Optional[str] = None
    confirmed_batches: int = 0


@dataclass
class CreateAirdropRequest:
    creator_address: str
    airdrop_type: AirdropType
    currency: str
    total_amount: int
    currency_decimals: int = 18
    currency_symbol: str = ""
    nft_address: Optional[str] = None
    space_id: Optional[str] = None  # encoded id carrying the collection address
    tax_percent: Optional[float] = None
    admin_tax_percent: Optional[float] = None
    max_participants: int = 0
    exclude: list[str] = field(default_factory=list)
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass
class DistributionEvent:
    airdrop_id: str
    status: AirdropStatus
    ok: bool
    error: Optional[str] = None
    legs: dict[str, DistributionResult] = field(default_factory=dict)
