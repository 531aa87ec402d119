import re
from typing import Optional

from web3 import AsyncWeb3

from airdrop_engine.errors import ValidationError

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
ZERO_ADDRESS = "0x" + "0" * 40


def is_valid_address(s) -> bool:
    return isinstance(s, str) and bool(ADDRESS_RE.match(s))


def normalize_address(s: str) -> str:
    if not is_valid_address(s):
        raise ValidationError(f"invalid address: {s!r}")
    return s.lower()


def to_checksum(s: str) -> str:
    return AsyncWeb3.to_checksum_address(s)


def extract_address_from_encoded_id(encoded_id) -> Optional[str]:
    """
    Encoded ids carry an address after a one byte type tag, then zero padding:
    10 + <40 hex chars> + 0000... Returns the lowercased address or None.
    """
    try:
        s = encoded_id.strip()
        if s[:2].lower() == "0x":
            s = s[2:]
        if len(s) < 42:
            return None
        candidate = "0x" + s[2:42]
        if not is_valid_address(candidate):
            return None
        return candidate.lower()
    except (AttributeError, TypeError):
        return None

