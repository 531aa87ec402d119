import json
from pathlib import Path

from airdrop_engine.ports import ExcludesRepository


class FileExcludesRepository(ExcludesRepository):
    """
    Addresses and identities that never receive a payout (exchanges, burn
    wallets, other bots). Accepts a JSON list, or an object of
    {label: [addresses]}.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    async def get_excludes(self) -> set[str]:
        if not self._path.exists():
            return set()
        doc = json.loads(self._path.read_text(encoding="utf-8"))
        if isinstance(doc, list):
            return {str(v).lower() for v in doc}
        if isinstance(doc, dict):
            return {str(v).lower() for vals in doc.values() for v in vals}
        return set()
