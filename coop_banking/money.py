"""
Monetary Amount Module

Decimal normalisation for rupee amounts. NEVER uses float arithmetic for
balances: floats are converted through their string form before quantizing.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CURRENCY_CODE = "INR"
MINIMUM_UNIT = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, float, str]


def _parse(value: AmountLike, field_name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number", {"field": field_name})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number", {"field": field_name})
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a finite number", {"field": field_name})
    return amount


def _quantize(amount: Decimal, field_name: str) -> Decimal:
    try:
        return amount.quantize(MINIMUM_UNIT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"{field_name} is out of range", {"field": field_name})


def to_amount(value: AmountLike, field_name: str = "amount") -> Decimal:
    """
    Convert a user-supplied value into a two-place Decimal

    Raises:
        ValidationError: If the value is not a finite number
    """
    return _quantize(_parse(value, field_name), field_name)


def to_positive_amount(value: AmountLike, field_name: str = "amount") -> Decimal:
    """
    Convert a posting amount, requiring at least the minimum unit (0.01)

    Amounts finer than the minimum unit are rejected, never rounded.
    """
    amount = _parse(value, field_name)
    if amount <= ZERO:
        raise ValidationError(
            f"{field_name} must be greater than 0",
            {"field": field_name, "minimum": str(MINIMUM_UNIT)}
        )
    quantized = _quantize(amount, field_name)
    if quantized != amount:
        raise ValidationError(
            f"{field_name} cannot have more than two decimal places",
            {"field": field_name, "minimum": str(MINIMUM_UNIT)}
        )
    return quantized


def to_non_negative_amount(value: AmountLike, field_name: str = "amount") -> Decimal:
    """Convert and reject negative values"""
    amount = to_amount(value, field_name)
    if amount < ZERO:
        raise ValidationError(f"{field_name} cannot be negative", {"field": field_name})
    return amount


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{CURRENCY_CODE} {amount:,.2f}"
