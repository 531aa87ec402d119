from airdrop_engine.models import DistributionBatch

DEFAULT_BATCH_CAPACITY = 80


def plan(recipients: list[str], capacity: int = DEFAULT_BATCH_CAPACITY, amount: int = 0) -> list[DistributionBatch]:
    if capacity < 1:
        raise ValueError(f"batch capacity must be >= 1, got {capacity}")
    return [
        DistributionBatch(index=i, recipients=list(recipients[start: start + capacity]), amount=amount)
        for i, start in enumerate(range(0, len(recipients), capacity))
    ]
