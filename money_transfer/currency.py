"""
Amount Handling Module

Fixed-point amounts with two fractional digits. NEVER uses float for monetary
values: floats are converted through their string form.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from .errors import ErrorKind, LedgerError

# Set global decimal context for financial precision
getcontext().prec = 28

AMOUNT_PRECISION = 2
AMOUNT_QUANTUM = Decimal('0.1') ** AMOUNT_PRECISION
ZERO = Decimal('0.00')
# Largest balance a DECIMAL(10, 2) column can hold
MAX_BALANCE = Decimal('99999999.99')

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert a number to Decimal without binary float artifacts

    Raises:
        LedgerError(INVALID_AMOUNT): If the value is not a finite number
    """
    if isinstance(value, bool):
        raise LedgerError(ErrorKind.INVALID_AMOUNT, "amount must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise LedgerError(ErrorKind.INVALID_AMOUNT, f"cannot convert {value!r} to an amount")
    if not result.is_finite():
        raise LedgerError(ErrorKind.INVALID_AMOUNT, "amount must be finite")
    return result


def _quantize(amount: Decimal) -> Decimal:
    try:
        return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise LedgerError(ErrorKind.INVALID_AMOUNT, f"amount {amount} is out of range")


def quantize_amount(value: AmountLike) -> Decimal:
    """Round to two fractional digits (used for balances read back or seeded)"""
    return _quantize(to_decimal(value))


def validate_transfer_amount(value: AmountLike) -> Decimal:
    """
    Validate a transfer amount.

    The amount must be strictly positive and exactly representable with two
    fractional digits; it is never silently rounded.

    Returns:
        The amount quantized to two fractional digits

    Raises:
        LedgerError(INVALID_AMOUNT): If the amount is not acceptable
    """
    amount = to_decimal(value)
    if amount <= 0:
        raise LedgerError(ErrorKind.INVALID_AMOUNT, "amount must be positive")
    quantized = _quantize(amount)
    if quantized != amount:
        raise LedgerError(
            ErrorKind.INVALID_AMOUNT,
            f"amount {amount} has more than {AMOUNT_PRECISION} fractional digits"
        )
    return quantized


def format_amount(value: Decimal) -> str:
    """Format for display with thousands separators"""
    return f"{quantize_amount(value):,.{AMOUNT_PRECISION}f}"