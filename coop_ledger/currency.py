"""
Money Module

Fixed-precision money for every balance in the ledger. Amounts are held as
integer minor units (cents) and NEVER as float. The only rounding point is
multiplication by a rate, which rounds half-up to the minor unit.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
import re

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

MINOR_UNIT_EXPONENT = 2  # cents
_MINOR_UNIT = Decimal(1).scaleb(-MINOR_UNIT_EXPONENT)
_MINOR_PER_MAJOR = 10 ** MINOR_UNIT_EXPONENT

AmountLike = Union[str, int, Decimal]


@dataclass(frozen=True, order=True)
class Money:
    """
    Immutable, currency-agnostic money value.

    Construct with ``Money.of("12.34")``, ``Money.zero()`` or
    ``Money.from_minor_units(1234)``.
    """
    minor_units: int

    def __post_init__(self):
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise ValidationError(f"Money minor units must be an int, got {type(self.minor_units).__name__}")

    @classmethod
    def of(cls, value: AmountLike) -> 'Money':
        """
        Build Money from a decimal amount in major units.

        Raises:
            ValidationError: if the value is a float, is not a number, or has
                more fractional digits than the minor unit allows
        """
        amount = to_decimal(value)
        scaled = amount * _MINOR_PER_MAJOR
        if scaled != scaled.to_integral_value():
            raise ValidationError(
                f"Amount {value} has more than {MINOR_UNIT_EXPONENT} decimal places"
            )
        return cls(int(scaled))

    @classmethod
    def zero(cls) -> 'Money':
        return cls(0)

    @classmethod
    def from_minor_units(cls, minor_units: int) -> 'Money':
        return cls(minor_units)

    @property
    def amount(self) -> Decimal:
        """Amount in major units, always with two decimal places"""
        return (Decimal(self.minor_units) / _MINOR_PER_MAJOR).quantize(_MINOR_UNIT)

    def __add__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.minor_units + other.minor_units)

    def __sub__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.minor_units - other.minor_units)

    def __mul__(self, rate: AmountLike) -> 'Money':
        """Multiply by a rate, rounding half-up to the minor unit"""
        factor = to_decimal(rate)
        product = (Decimal(self.minor_units) * factor).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return Money(int(product))

    __rmul__ = __mul__

    def __neg__(self) -> 'Money':
        return Money(-self.minor_units)

    def __abs__(self) -> 'Money':
        return Money(abs(self.minor_units))

    def is_zero(self) -> bool:
        return self.minor_units == 0

    def is_positive(self) -> bool:
        return self.minor_units > 0

    def is_negative(self) -> bool:
        return self.minor_units < 0

    def to_string(self) -> str:
        """Plain decimal string, suitable for storage"""
        return str(self.amount)

    def __str__(self) -> str:
        return self.to_string()


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert an amount-like value to Decimal without going through float.

    Raises:
        ValidationError: for floats, booleans and unparseable strings
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"Monetary values must not be {type(value).__name__}: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise ValidationError(f"Cannot convert {type(value).__name__} to a decimal amount")

    if not result.is_finite():
        raise ValidationError(f"Amount must be finite, got {value!r}")
    return result


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, accepting thousands separators

    Raises:
        ValidationError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Value must be a non-empty string")

    clean_value = re.sub(r'[\s,_]', '', value.strip())
    if not re.fullmatch(r'[+-]?(\d+(\.\d*)?|\.\d+)', clean_value):
        raise ValidationError(f"Cannot convert '{value}' to Decimal")

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValidationError(f"Cannot convert '{value}' to Decimal")


def sum_money(values) -> Money:
    """Sum an iterable of Money, starting from zero"""
    total = Money.zero()
    for value in values:
        total = total + value
    return total
