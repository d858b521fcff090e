from decimal import Decimal, InvalidOperation
from typing import Union

from pnl_indexer.core.errors import LegNormalizationError


def to_raw_amount(value: Union[str, int, float, Decimal, None], decimals: int) -> int:
    """
    Convert a human-readable amount ("1.5", "2e-6") into an integer count of
    the token's smallest unit. Extra fractional digits are truncated.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise LegNormalizationError("amount is missing")
    try:
        d = Decimal(str(value).strip())
    except InvalidOperation:
        raise LegNormalizationError(f"unparseable amount {value!r}")
    if not d.is_finite() or d < 0:
        raise LegNormalizationError(f"invalid amount {value!r}")

    whole, _, frac = format(d, "f").partition(".")
    frac = (frac + "0" * decimals)[:decimals]
    return int(whole or "0") * 10 ** decimals + int(frac or "0")


def to_human(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)
