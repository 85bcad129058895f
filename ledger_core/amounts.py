"""
Fixed-Point Amount Module

All balances and transaction amounts are Decimal values quantized to two
places. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from .errors import InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28

AMOUNT_PRECISION = 2
ZERO = Decimal('0.00')

_QUANTUM = Decimal('0.1') ** AMOUNT_PRECISION

AmountLike = Union[Decimal, int, str, float]


def quantize(amount: Decimal) -> Decimal:
    """Round to ledger precision"""
    return amount.quantize(_QUANTUM, rounding=ROUND_HALF_UP)


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert caller input to a quantized Decimal.

    Floats go through str() so 0.1 becomes Decimal('0.10'), not the binary
    approximation.

    Raises:
        InvalidAmount: If the value is missing, not numeric, or not finite
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount("Amount is required")

    if not isinstance(value, Decimal):
        try:
            value = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"Invalid amount: {value!r}", {"amount": str(value)})

    if not value.is_finite():
        raise InvalidAmount(f"Invalid amount: {value}", {"amount": str(value)})

    # Magnitudes past the context precision cannot be held to two places
    try:
        return quantize(value)
    except InvalidOperation:
        raise InvalidAmount(f"Amount too large: {value}", {"amount": str(value)})


def to_positive_amount(value: AmountLike, label: str = "Amount") -> Decimal:
    """Convert and require a strictly positive amount"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidAmount(f"{label} must be positive", {"amount": amount})
    return amount


def format_amount(amount: Decimal) -> str:
    """Format for storage and display"""
    return f"{quantize(amount):.{AMOUNT_PRECISION}f}"
