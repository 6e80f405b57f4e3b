"""
Money and Rounding Module

Fixed-point Decimal helpers for every peso amount the engine touches.
NEVER uses float for monetary values. There is exactly one rounding rule:
round-half-up to two decimal places, applied only at the boundaries where a
value is reported, never on intermediate results.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Iterable, Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a numeric value to Decimal without picking up binary float error.

    Floats go through ``str()`` first so ``0.1`` becomes ``Decimal('0.1')``.

    Raises:
        ValueError: If the value cannot be represented as a Decimal
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: Numeric) -> Decimal:
    """Round to centavos using round-half-up"""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Numeric]) -> Decimal:
    """Exact sum of amounts (no rounding)"""
    total = Decimal('0')
    for value in values:
        total += to_decimal(value)
    return total


def is_positive(value: Numeric) -> bool:
    return to_decimal(value) > Decimal('0')


def decimal_from_string(value: str) -> Decimal:
    """
    Parse a user-entered amount such as ``"₱1,234.50"``.

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Strip peso sign, "PHP" prefix and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def is_whole_centavos(value: Numeric) -> bool:
    """True when the value has no fraction of a centavo"""
    value = to_decimal(value)
    return value == round_money(value)
