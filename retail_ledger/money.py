"""
Decimal Amount Handling

All balances and transaction amounts are stored with two decimal places.
NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, getcontext
from typing import Union

from .exceptions import InvalidAmountError

getcontext().prec = 28

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, str, int, float]


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert a value to a two-place Decimal amount

    Floats are converted through their string form so that 0.1 stays 0.1.
    Amounts are never rounded: a value with non-zero digits past the cents
    is refused.

    Raises:
        InvalidAmountError: If the value is not a finite number, has more than
            two decimal places, or is too large to hold to the cent
    """
    if isinstance(value, bool):
        raise InvalidAmountError(f"Invalid amount: {value!r}")

    if not isinstance(value, Decimal):
        try:
            value = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(f"Invalid amount: {value!r}")

    if not value.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {value}")

    try:
        amount = value.quantize(CENTS)
    except InvalidOperation:
        raise InvalidAmountError(f"Amount {value} is too large")

    if amount != value:
        raise InvalidAmountError(f"Amount {value} has more than two decimal places")
    return amount


def to_positive_amount(value: AmountLike) -> Decimal:
    """Convert a value to a strictly positive two-place amount"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidAmountError(f"Amount must be greater than zero, got {amount}")
    return amount


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{amount:,.2f}"
