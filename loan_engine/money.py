"""
Money Helpers Module

Decimal conversion and rounding for loan figures. Every monetary value is a
Decimal quantized to two places with half-away-from-zero rounding.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Optional, Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0.00')
CENT = Decimal('0.01')
HUNDRED = Decimal('100')

Number = Union[Decimal, int, float, str]


def to_decimal(value: Optional[Number]) -> Decimal:
    """
    Convert a caller-supplied value to Decimal.

    Accepts Decimal, int, float (converted through str to avoid binary
    artifacts) and strings, including display strings carrying a currency
    symbol or thousands separators such as "₹1,000.50".

    Raises:
        ValueError: If the value cannot be interpreted as a number
    """
    if value is None:
        raise ValueError("Amount is required")
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise ValueError(f"Invalid amount: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Amount must be a finite number, got {value!r}")
    return result


# Optional sign, optional currency prefix, digits with separators, optional fraction
AMOUNT_PATTERN = re.compile(
    r'^([+-]?)\s*(?:Rs\.?|INR|USD|EUR|GBP|[^\w\s.,+-])?\s*([+-]?)(\d[\d, _]*(?:\.\d*)?|\.\d+)$'
)


def decimal_from_string(amount_str: str) -> Decimal:
    """
    Parse an amount string such as "1000.50", "-250" or "₹1,00,000".

    A leading currency symbol or code and thousands separators are allowed.
    Anything else (exponents, trailing text, embedded letters) is rejected.
    """
    match = AMOUNT_PATTERN.match(amount_str.strip())
    if not match or (match.group(1) and match.group(2)):
        raise ValueError(f"Invalid amount format: {amount_str!r}")
    sign = match.group(1) or match.group(2)
    digits = re.sub(r'[, _]', '', match.group(3))
    try:
        return Decimal(sign + digits)
    except InvalidOperation:
        raise ValueError(f"Invalid amount format: {amount_str!r}")


def round_money(value: Number) -> Decimal:
    """Round to 2 decimal places, half away from zero"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_whole(value: Number) -> int:
    """Round to an integer, half away from zero (scores, day counts)"""
    return int(to_decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def percent_of(amount: Decimal, rate: Decimal) -> Decimal:
    """amount * rate / 100, rounded"""
    return round_money(amount * rate / HUNDRED)
