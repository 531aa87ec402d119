# services/export.py
from decimal import Decimal
from pathlib import Path

import pandas as pd

from airdrop_engine.models import Airdrop, LEG_NET
from airdrop_engine.services.batching import plan
from airdrop_engine.services.lifecycle import tax_legs


def plan_rows(airdrop: Airdrop, batch_size: int, admin_address: str = "") -> list[dict]:
    """
    Flattens every payout leg into one row per transfer.

    - amount -> raw smallest-unit integer as a string
    - roundedAmount -> float in token units, display only
    - confirmed -> the batch already landed on chain (per batch_progress)
    """
    legs = [(LEG_NET, airdrop.participants, airdrop.amount_per_recipient)]
    legs += tax_legs(airdrop, admin_address)
    scale = Decimal(10) ** int(airdrop.currency_decimals)

    rows = []
    for leg, recipients, amount in legs:
        done = int(airdrop.batch_progress.get(leg, 0))
        for batch in plan(recipients, batch_size, amount):
            for address in batch.recipients:
                rows.append({
                    "leg": leg,
                    "batch": batch.index + 1,
                    "address": address,
                    "amount": str(amount),
                    "roundedAmount": float(Decimal(amount) / scale),
                    "confirmed": batch.index < done,
                })
    return rows


def write_plan_csv(rows: list[dict], out_path: Path) -> str:
    df = pd.DataFrame(rows, columns=["leg", "batch", "address", "amount", "roundedAmount", "confirmed"])
    df.to_csv(out_path, index=False)
    return str(out_path)
