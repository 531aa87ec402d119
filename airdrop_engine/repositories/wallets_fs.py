import asyncio
import json
from pathlib import Path
from typing import Optional

from airdrop_engine.ports import WalletCache


class FileWalletCache(WalletCache):
    """identity -> wallet pairs in a single JSON object, loaded lazily."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._map: Optional[dict[str, str]] = None
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, str]:
        if self._map is None:
            if self._path.exists():
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                self._map = {k.lower(): v.lower() for k, v in raw.items()}
            else:
                self._map = {}
        return self._map

    async def get_wallet(self, identity: str) -> Optional[str]:
        return self._load().get(identity.lower())

    async def save_wallet(self, identity: str, wallet: str) -> None:
        async with self._lock:
            m = self._load()
            m[identity.lower()] = wallet.lower()
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(m, indent=2, sort_keys=True), encoding="utf-8")
