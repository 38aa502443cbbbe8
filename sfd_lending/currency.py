"""
Currency Precision Module

Minor-unit rounding and safe Decimal parsing for monetary values.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Any
import re

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

# Digits with optional sign and ',' or '.' separators; no exponents or symbols
NUMBER_PATTERN = re.compile(r'[+-]?\d+(?:[.,]\d+)*')


class Currency(Enum):
    """ISO 4217 currency codes with minor-unit precision"""
    XOF = ("XOF", 0)  # West African CFA franc
    XAF = ("XAF", 0)  # Central African CFA franc
    EUR = ("EUR", 2)
    USD = ("USD", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValueError(f"Unsupported currency: {code}")


def round_amount(value: Decimal, currency: Currency) -> Decimal:
    """Round a value to the currency minor unit using round-half-up"""
    return value.quantize(currency.quantum, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a number-like value to Decimal without passing through float
    representation errors.

    Raises:
        ValueError: If the value cannot be interpreted as a finite number
    """
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise ValueError(f"Cannot convert {value!r} to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number ("1 000 000", "1,000.50", "85804")

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # FCFA amounts use (non-breaking) space grouping
    clean_value = re.sub(r'\s', '', value)
    if not NUMBER_PATTERN.fullmatch(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) < 3:  # Likely decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Likely thousands separator
            clean_value = clean_value.replace(',', '')
    elif ',' in clean_value:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def require_decimal(value: Any, field_name: str) -> Decimal:
    """
    Parse an input value as Decimal, raising a ValidationError naming the
    offending field on failure
    """
    try:
        return to_decimal(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {field_name}: {e}", {field_name: str(value)})
