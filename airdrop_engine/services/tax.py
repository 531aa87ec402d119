from airdrop_engine.errors import ValidationError
from airdrop_engine.models import TaxSplit

BPS_DENOMINATOR = 10_000


def percent_to_bps(percent: float) -> int:
    p = min(max(float(percent), 0.0), 100.0)
    return int(round(p * 100))


def compute_tax(gross: int, holder_tax_percent: float, admin_tax_percent: float,
                admin_enabled: bool = True) -> TaxSplit:
    """
    Integer basis-point split: tax = gross * bps // 10000, net takes the rest,
    so holder + admin + net == gross exactly.
    """
    gross = int(gross)
    if gross < 0:
        raise ValidationError(f"negative amount: {gross}")
    holder_bps = percent_to_bps(holder_tax_percent)
    admin_bps = percent_to_bps(admin_tax_percent) if admin_enabled else 0
    if holder_bps + admin_bps > BPS_DENOMINATOR:
        raise ValidationError(f"tax rates exceed 100%: {holder_bps + admin_bps} bps")

    holder_tax = gross * holder_bps // BPS_DENOMINATOR
    admin_tax = gross * admin_bps // BPS_DENOMINATOR
    return TaxSplit(holder_tax=holder_tax, admin_tax=admin_tax, net=gross - holder_tax - admin_tax)


def amount_per_recipient(net: int, count: int) -> int:
    # the floor division remainder stays in the treasury
    return net // count if count > 0 else 0
