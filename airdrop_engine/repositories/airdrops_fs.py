import asyncio
import json
import os
from pathlib import Path
from typing import Optional

from airdrop_engine.models import Airdrop
from airdrop_engine.ports import AirdropRepository
from airdrop_engine.repositories.airdrops_memory import is_open_joinable


class FileAirdropRepository(AirdropRepository):
    """One JSON document per airdrop under <base_dir>/airdrops. Terminal records are kept."""

    def __init__(self, base_dir: Path) -> None:
        self.airdrops = Path(base_dir) / "airdrops"
        self.airdrops.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, airdrop_id: str) -> Path:
        return self.airdrops / f"{airdrop_id}.json"

    def _write(self, airdrop: Airdrop) -> None:
        p = self._path(airdrop.id)
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(airdrop.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, p)  # readers never see a half-written record

    def _read(self, p: Path) -> Airdrop:
        return Airdrop.from_dict(json.loads(p.read_text(encoding="utf-8")))

    def _all(self) -> list[Airdrop]:
        return [self._read(p) for p in self.airdrops.glob("*.json")]

    async def create(self, airdrop: Airdrop) -> Airdrop:
        async with self._lock:
            if self._path(airdrop.id).exists():
                raise KeyError(f"airdrop {airdrop.id} already exists")
            self._write(airdrop)
        return airdrop.copy()

    async def get(self, airdrop_id: str) -> Optional[Airdrop]:
        p = self._path(airdrop_id)
        if not p.exists():
            return None
        return self._read(p)

    async def update(self, airdrop: Airdrop) -> Airdrop:
        async with self._lock:
            if not self._path(airdrop.id).exists():
                raise KeyError(f"airdrop {airdrop.id} does not exist")
            self._write(airdrop)
        return airdrop.copy()

    async def list_by_creator(self, creator_address: str) -> list[Airdrop]:
        c = creator_address.lower()
        out = [a for a in self._all() if a.creator_address.lower() == c]
        return sorted(out, key=lambda a: a.created_at, reverse=True)

    async def list_open_joinable(self) -> list[Airdrop]:
        return sorted((a for a in self._all() if is_open_joinable(a)), key=lambda a: a.created_at, reverse=True)

    async def find_by_deposit_tx(self, tx_hash: str) -> Optional[Airdrop]:
        h = tx_hash.lower()
        for a in self._all():
            if a.deposit_tx_hash and a.deposit_tx_hash.lower() == h:
                return a
        return None
