import json
import time
from pathlib import Path
from typing import Optional

from airdrop_engine.ports import HolderCache


class FileHolderCache(HolderCache):
    def __init__(self, base_dir: Path) -> None:
        self.holders = Path(base_dir) / "holders"
        self.holders.mkdir(parents=True, exist_ok=True)

    async def get_holders(self, nft_address: str, max_age: float) -> Optional[set[str]]:
        p = self.holders / f"{nft_address.lower()}.json"
        if not p.exists():
            return None
        try:
            doc = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        if time.time() - float(doc.get("updated_at", 0)) > max_age:
            return None
        return {h.lower() for h in doc.get("holders", [])}

    async def save_holders(self, nft_address: str, holders: set[str]) -> None:
        p = self.holders / f"{nft_address.lower()}.json"
        doc = {"updated_at": time.time(), "holders": sorted(h.lower() for h in holders)}
        p.write_text(json.dumps(doc), encoding="utf-8")
