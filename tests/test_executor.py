import asyncio

import pytest

from airdrop_engine.errors import ConfigurationError, TransientChainError
from airdrop_engine.services.batching import plan
from airdrop_engine.services.executor import DistributionExecutor

from conftest import TREASURY, TOKEN, addr


def _run(executor, recipients, amount=5, capacity=2, **kw):
    return asyncio.run(executor.execute_batches(plan(recipients, capacity, amount), amount, TREASURY, TOKEN, **kw))


class TestExecuteBatches:
    def test_pays_every_batch_in_order(self, chain, executor):
        """Three recipients with capacity two go out as two execute() calls."""
        recipients = [addr(1), addr(2), addr(3)]
        res = _run(executor, recipients)

        assert res.ok
        assert res.confirmed_batches == 2
        assert len(chain.sent) == 2
        assert all(account == TREASURY for account, _ in chain.sent)
        assert chain.paid() == [(r, 5) for r in recipients]
        assert res.last_tx_hash == "0x" + f"{2:064x}"

    def test_payer_must_be_the_treasury(self, chain, executor):
        with pytest.raises(ConfigurationError):
            asyncio.run(executor.execute_batches(plan([addr(1)], 2, 5), 5, addr(9), TOKEN))
        assert chain.sent == []

    def test_missing_treasury_is_a_configuration_error(self, chain):
        executor = DistributionExecutor(chain, "", retries=1, retry_delay=0)
        with pytest.raises(ConfigurationError):
            asyncio.run(executor.execute_batches(plan([addr(1)], 2, 5), 5, TREASURY, TOKEN))

    def test_capability_check_failure_is_retried(self, chain, executor):
        chain.supports = [False]
        res = _run(executor, [addr(1)])

        assert res.ok
        assert chain.support_checks == 2
        assert len(chain.sent) == 1

    def test_resumes_after_confirmed_batches(self, chain, executor):
        """A send error on batch two must not re-send batch one."""
        chain.send_failures = [None, TransientChainError("nonce too low")]
        progress = []

        async def record(confirmed, tx_hash):
            progress.append((confirmed, tx_hash))

        res = _run(executor, [addr(1), addr(2), addr(3)], on_batch_confirmed=record)

        assert res.ok
        assert len(chain.sent) == 2
        assert chain.paid() == [(addr(1), 5), (addr(2), 5), (addr(3), 5)]
        assert [c for c, _ in progress] == [1, 2]

    def test_reverted_batch_is_sent_again(self, chain, executor):
        chain.reverted = {1}
        res = _run(executor, [addr(1), addr(2), addr(3)])

        assert res.ok
        assert len(chain.sent) == 3
        assert chain.sent[0][1] == chain.sent[1][1]

    def test_start_batch_skips_confirmed_work(self, chain, executor):
        res = _run(executor, [addr(1), addr(2), addr(3)], start_batch=1)

        assert res.ok
        assert chain.paid() == [(addr(3), 5)]

    def test_nothing_left_to_send(self, chain, executor):
        res = _run(executor, [addr(1)], start_batch=1)
        assert res.ok
        assert chain.support_checks == 0

    def test_gives_up_after_retry_budget(self, chain, executor):
        chain.supports = [False] * 4
        res = _run(executor, [addr(1), addr(2)])

        assert not res.ok
        assert "batched execution" in res.error
        assert res.confirmed_batches == 0
        assert chain.sent == []
        assert chain.support_checks == 4

    def test_zero_amount_is_refused(self, chain, executor):
        res = _run(executor, [addr(1)], amount=0)
        assert not res.ok
        assert chain.sent == []


class TestReceiptTimeouts:
    def test_timed_out_receipt_is_checked_again_not_resent(self, chain, executor):
        chain.receipt_failures = {1: 1}
        res = _run(executor, [addr(1)])

        assert res.ok
        assert len(chain.sent) == 1
        assert res.last_tx_hash == "0x" + f"{1:064x}"

    def test_in_flight_tx_of_an_earlier_run(self, chain, executor):
        """A tx sent before a rollback confirms its batch instead of a second send."""
        earlier = "0x" + "ee" * 32
        sent = []

        async def on_sent(index, tx_hash):
            sent.append((index, tx_hash))

        res = _run(executor, [addr(1), addr(2), addr(3)], on_batch_sent=on_sent, in_flight_tx=earlier)

        assert res.ok
        assert chain.paid() == [(addr(3), 5)]
        assert sent == [(1, "0x" + f"{1:064x}")]

    def test_last_confirmed_tx_is_reported_when_nothing_is_left(self, chain, executor):
        res = _run(executor, [addr(1)], start_batch=1, last_tx_hash="0xabc")

        assert res.ok
        assert res.last_tx_hash == "0xabc"
        assert chain.sent == []
