import asyncio
import json

import pytest

from airdrop_engine.models import Airdrop, AirdropStatus, AirdropType
from airdrop_engine.repositories.airdrops_fs import FileAirdropRepository
from airdrop_engine.repositories.airdrops_memory import InMemoryAirdropRepository
from airdrop_engine.repositories.excludes_file import FileExcludesRepository
from airdrop_engine.repositories.holders_fs import FileHolderCache

from conftest import CREATOR, TOKEN, NFT, addr

BIG = 123456789 * 10 ** 30


def _airdrop(**kw):
    kw.setdefault("airdrop_type", AirdropType.OPEN)
    return Airdrop(creator_address=CREATOR, currency=TOKEN, currency_decimals=18, total_amount=BIG, **kw)


@pytest.fixture(params=["memory", "fs"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryAirdropRepository()
    return FileAirdropRepository(tmp_path)


class TestAirdropRepository:
    def test_create_get_update(self, store):
        a = _airdrop(net_amount=BIG - 7)
        a.set_participants([addr(1), addr(2)])

        async def go():
            await store.create(a)
            loaded = await store.get(a.id)
            loaded.status = AirdropStatus.FUNDED
            loaded.batch_progress["net"] = 1
            loaded.pending_tx["net"] = "0x01"
            await store.update(loaded)
            return loaded, await store.get(a.id), await store.get("nope")

        loaded, updated, missing = asyncio.run(go())

        assert loaded.total_amount == BIG
        assert loaded.amount_per_recipient == (BIG - 7) // 2
        assert loaded.participants == [addr(1), addr(2)]
        assert updated.status == AirdropStatus.FUNDED
        assert updated.batch_progress == {"net": 1}
        assert updated.pending_tx == {"net": "0x01"}
        assert updated.confirmed_tx == {}
        assert missing is None

    def test_returned_records_are_copies(self, store):
        a = _airdrop()

        async def go():
            await store.create(a)
            first = await store.get(a.id)
            first.participants.append(addr(1))
            return await store.get(a.id)

        assert asyncio.run(go()).participants == []

    def test_duplicate_and_unknown_ids(self, store):
        a = _airdrop()

        async def go():
            await store.create(a)
            with pytest.raises(KeyError):
                await store.create(a)
            with pytest.raises(KeyError):
                await store.update(_airdrop())

        asyncio.run(go())

    def test_listings(self, store):
        older = _airdrop(created_at=1)
        newer = _airdrop(created_at=2)
        fixed = _airdrop(airdrop_type=AirdropType.SCOPED, nft_address=NFT, created_at=3)
        capped = _airdrop(airdrop_type=AirdropType.SCOPED, nft_address=NFT, max_participants=4, created_at=4)
        done = _airdrop(status=AirdropStatus.COMPLETED, created_at=5, deposit_tx_hash="0xabc")
        other = Airdrop(creator_address=addr(9), airdrop_type=AirdropType.OPEN, currency=TOKEN,
                        currency_decimals=6, total_amount=1)

        async def go():
            for x in (older, newer, fixed, capped, done, other):
                await store.create(x)
            return (await store.list_open_joinable(), await store.list_by_creator(CREATOR),
                    await store.find_by_deposit_tx("0xABC"))

        joinable, mine, by_tx = asyncio.run(go())

        assert [a.id for a in joinable] == [other.id, capped.id, newer.id, older.id]
        assert [a.id for a in mine] == [done.id, capped.id, fixed.id, newer.id, older.id]
        assert by_tx.id == done.id


class TestFileAirdropRepository:
    def test_amounts_are_stored_as_strings(self, tmp_path):
        repo = FileAirdropRepository(tmp_path)
        a = _airdrop()
        asyncio.run(repo.create(a))

        doc = json.loads((tmp_path / "airdrops" / f"{a.id}.json").read_text(encoding="utf-8"))

        assert doc["total_amount"] == str(BIG)
        assert doc["airdrop_type"] == "open"
        assert doc["status"] == "pending"

    def test_survives_reopen(self, tmp_path):
        a = _airdrop()
        asyncio.run(FileAirdropRepository(tmp_path).create(a))

        assert asyncio.run(FileAirdropRepository(tmp_path).get(a.id)).total_amount == BIG


class TestFileHolderCache:
    def test_ttl(self, tmp_path):
        cache = FileHolderCache(tmp_path)

        async def go():
            await cache.save_holders(NFT.upper().replace("0X", "0x"), {addr(1).upper().replace("0X", "0x")})
            fresh = await cache.get_holders(NFT, 3600)
            return fresh, await cache.get_holders(NFT, -1), await cache.get_holders(addr(5), 3600)

        fresh, stale, unknown = asyncio.run(go())

        assert fresh == {addr(1)}
        assert stale is None
        assert unknown is None


class TestFileExcludesRepository:
    def test_list_and_mapping(self, tmp_path):
        flat = tmp_path / "flat.json"
        flat.write_text(json.dumps([addr(1).upper().replace("0X", "0x"), "Bot-2"]), encoding="utf-8")
        grouped = tmp_path / "grouped.json"
        grouped.write_text(json.dumps({"cex": [addr(2)], "burn": [addr(3)]}), encoding="utf-8")

        assert asyncio.run(FileExcludesRepository(flat).get_excludes()) == {addr(1), "bot-2"}
        assert asyncio.run(FileExcludesRepository(grouped).get_excludes()) == {addr(2), addr(3)}
        assert asyncio.run(FileExcludesRepository(tmp_path / "missing.json").get_excludes()) == set()
