"""
Money helpers.

Amounts are stored as integer paise. Rates (GST, percentage coupons) are
stored as integer basis points. Decimal rupee values only exist at the HTTP
boundary.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Union
from pydantic import BeforeValidator, PlainSerializer

PAISE_PER_RUPEE = 100
BPS_DENOMINATOR = 10000


def to_paise(amount: Union[Decimal, int, float, str]) -> int:
    value = Decimal(str(amount)) * PAISE_PER_RUPEE
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_paise(value: int) -> Decimal:
    return (Decimal(value) / PAISE_PER_RUPEE).quantize(Decimal("0.01"))


def apply_rate(amount: int, rate_bps: int) -> int:
    """``amount`` x ``rate_bps`` / 10000, rounded half-up to whole paise."""
    value = Decimal(amount) * Decimal(rate_bps) / BPS_DENOMINATOR
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def prorate(amount: int, part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    value = Decimal(amount) * Decimal(part) / Decimal(whole)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _paise_to_rupees(value):
    if isinstance(value, int) and not isinstance(value, bool):
        return from_paise(value)
    return value


# Response field: stored paise in, rupees out (as a JSON number)
Rupees = Annotated[
    Decimal,
    BeforeValidator(_paise_to_rupees),
    PlainSerializer(float, return_type=float, when_used="json"),
]
