import asyncio

import pytest
from eth_abi import encode, decode

from airdrop_engine.adapters.multicall import (
    AGGREGATE3_SELECTOR, encode_aggregate3, decode_aggregate3_result,
)
from airdrop_engine.adapters.node_pool import Web3NodePool
from airdrop_engine.adapters.web3_gateway import (
    Web3ChainGateway, encode_execute_batch, _too_many_logs, EXECUTE_SELECTOR, BATCH_EXECUTION_MODE,
)
from airdrop_engine.adapters.multicall import MulticallClient
from airdrop_engine.config import AppConfig
from airdrop_engine.errors import ConfigurationError
from airdrop_engine.services.executor import encode_transfer
from airdrop_engine.utils.rate_limiter import RateLimiter

from conftest import TREASURY, TOKEN, addr


class TestMulticall:
    def test_aggregate3_calldata(self):
        data = encode_aggregate3([(TOKEN, b"\x01\x02")], allow_failure=True)

        assert data[:4] == AGGREGATE3_SELECTOR
        (calls,) = decode(["(address,bool,bytes)[]"], data[4:])
        assert [(t.lower(), ok, payload) for t, ok, payload in calls] == [(TOKEN, True, b"\x01\x02")]

    def test_decode_result(self):
        raw = encode(["(bool,bytes)[]"], [[(True, b"\xaa" * 32), (False, b"")]])
        assert decode_aggregate3_result(raw) == [(True, b"\xaa" * 32), (False, b"")]


class TestExecuteCalldata:
    def test_batch_mode_execute(self):
        calls = [(TOKEN, encode_transfer(addr(1), 5)), (TOKEN, encode_transfer(addr(2), 5))]
        data = encode_execute_batch(calls)

        assert data[:4] == EXECUTE_SELECTOR
        mode, execution_data = decode(["bytes32", "bytes"], data[4:])
        assert mode == BATCH_EXECUTION_MODE
        (executions,) = decode(["(address,uint256,bytes)[]"], execution_data)
        assert [(t.lower(), v, d) for t, v, d in executions] == [(TOKEN, 0, c) for _, c in calls]


class TestTooManyLogs:
    @pytest.mark.parametrize("err", [
        ValueError({"code": -32005, "message": "limit exceeded"}),
        ValueError("query returned more than 10000 results"),
        RuntimeError("Log response size exceeded. You can make eth_getLogs requests with up to a 2K block range"),
    ])
    def test_detected(self, err):
        assert _too_many_logs(err)

    def test_other_errors(self):
        assert not _too_many_logs(ValueError({"code": -32000, "message": "header not found"}))
        assert not _too_many_logs(TimeoutError())


class TestGatewaySigner:
    def _gateway(self, key):
        pool = Web3NodePool(["http://127.0.0.1:8545", "http://127.0.0.1:8545"])
        return Web3ChainGateway(pool, RateLimiter(0), MulticallClient(), retries=0, base_delay=0, signer_key=key)

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            asyncio.run(self._gateway("").execute_batch(TREASURY, []))

    def test_key_must_own_the_treasury(self):
        with pytest.raises(ConfigurationError):
            asyncio.run(self._gateway("0x" + "11" * 32).execute_batch(TREASURY, []))

    def test_pool_dedups_urls(self):
        pool = Web3NodePool([" http://a ", "http://a", "", "http://b"])

        async def go():
            return [await pool.next_client() for _ in range(3)]

        first, second, third = asyncio.run(go())
        assert first is pool.primary and third is first and second is not first

    def test_empty_pool(self):
        with pytest.raises(ValueError):
            Web3NodePool(["", " "])


class TestConfig:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("BATCH_SIZE", "10")
        monkeypatch.setenv("TREASURY_ADDRESS", " " + TREASURY.upper().replace("0X", "0x") + " ")
        monkeypatch.setenv("RPC_POOL", "http://a,, http://b")
        monkeypatch.setenv("DEBUG", "1")

        cfg = AppConfig()

        assert cfg.batch_size == 10
        assert cfg.treasury_address == TREASURY
        assert cfg.rpc_pool == ["http://a", "http://b"]
        assert cfg.debug is True

    def test_defaults(self, monkeypatch):
        for name in ("BATCH_SIZE", "TAX_PERCENT", "ADMIN_TAX_PERCENT", "DEBUG", "JOIN_GRACE_DELAY"):
            monkeypatch.delenv(name, raising=False)

        cfg = AppConfig()

        assert (cfg.batch_size, cfg.tax_percent, cfg.admin_tax_percent) == (80, 2.0, 1.0)
        assert cfg.join_grace_delay == 5.0
        assert cfg.debug is False


class TestRateLimiter:
    def test_disabled(self):
        limiter = RateLimiter(0)

        async def go():
            for _ in range(100):
                await limiter.acquire()

        asyncio.run(go())

    def test_within_budget_does_not_wait(self):
        limiter = RateLimiter(5)

        async def go():
            loop = asyncio.get_running_loop()
            start = loop.time()
            for _ in range(5):
                await limiter.acquire()
            return loop.time() - start

        assert asyncio.run(go()) < 0.5
