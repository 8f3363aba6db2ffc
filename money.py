from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import InvalidInput


def to_cents(value: Union[Decimal, int, float, str]) -> int:
    """Convert a decimal amount to integer cents, rounding half-up."""
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise InvalidInput("Invalid amount") from exc
    if not amount.is_finite():
        raise InvalidInput("Invalid amount")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def positive_cents(value: Union[Decimal, int, float, str]) -> int:
    cents = to_cents(value)
    if cents <= 0:
        raise InvalidInput("Amount must be greater than 0")
    return cents


def cents_to_amount(cents: int) -> float:
    return cents / 100
