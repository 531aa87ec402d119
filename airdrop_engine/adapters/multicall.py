# adapters/multicall.py
from typing import List, Tuple
from web3 import AsyncWeb3
from eth_abi import encode, decode

from airdrop_engine.config import MULTICALL3
from airdrop_engine.utils.addresses import to_checksum

# aggregate3((address target, bool allowFailure, bytes callData)[]) returns ((bool success, bytes returnData)[])
AGGREGATE3_SELECTOR = AsyncWeb3.keccak(text="aggregate3((address,bool,bytes)[])")[:4]


def encode_aggregate3(calls: List[Tuple[str, bytes]], allow_failure: bool = True) -> bytes:
    values = [[(to_checksum(target), allow_failure, data) for target, data in calls]]
    return AGGREGATE3_SELECTOR + encode(["(address,bool,bytes)[]"], values)


def decode_aggregate3_result(data: bytes) -> List[Tuple[bool, bytes]]:
    return [(bool(ok), bytes(ret)) for ok, ret in decode(["(bool,bytes)[]"], bytes(data))[0]]


class MulticallClient:
    def __init__(self, address: str = MULTICALL3):
        self.address = to_checksum(address)

    async def aggregate3(self, w3: AsyncWeb3, calls: List[Tuple[str, bytes]],
                         allow_failure: bool = True) -> List[Tuple[bool, bytes]]:
        if not calls:
            return []
        res = await w3.eth.call({
            "to": self.address,
            "data": encode_aggregate3(calls, allow_failure),
        })
        return decode_aggregate3_result(res)
