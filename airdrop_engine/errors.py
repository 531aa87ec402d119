class AirdropError(Exception):
    pass


class ConfigurationError(AirdropError):
    """Wrong treasury, missing keys or addresses. Never retried."""


class TransientChainError(AirdropError):
    """RPC failure, timeout or a flaky capability check. Retried by the caller's policy."""


class ValidationError(AirdropError):
    """Bad input or an invalid state transition. The airdrop is left untouched."""


class NotFoundError(ValidationError):
    pass


class CapacityError(ValidationError):
    pass


class PartialDistributionFailure(AirdropError):
    """Net payout went through but a tax leg did not."""

    def __init__(self, airdrop_id: str, leg: str, error: str) -> None:
        super().__init__(f"airdrop {airdrop_id}: {leg} leg failed: {error}")
        self.airdrop_id = airdrop_id
        self.leg = leg
        self.error = error


class LogRangeTooLarge(TransientChainError):
    """The node refused an eth_getLogs window; split it and ask again."""
