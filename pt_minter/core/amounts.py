"""Mint amount grammar and fixed-point conversion."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from pt_minter.core.errors import AmountConversionError

AMOUNT_RE = re.compile(r"^(?!0\d|$)\d+(\.\d{1,18})?$")

MIN_MINT_AMOUNT = Decimal(10)
POINTS_DECIMALS = 21
UINT256_MAX = 2**256 - 1


def validate_amount(amount: object, minimum: Decimal | int = MIN_MINT_AMOUNT) -> bool:
    """True if ``amount`` is a decimal string with <= 18 fraction digits and >= minimum."""
    if not isinstance(amount, str):
        return False
    # fullmatch: re.match's $ also accepts a trailing newline
    if not AMOUNT_RE.fullmatch(amount):
        return False
    return Decimal(amount) >= Decimal(minimum)


def to_base_units(amount: str, decimals: int = POINTS_DECIMALS) -> int:
    """Convert a decimal amount string to integer base units.

    Integer arithmetic only, so no Decimal context rounding can creep in.
    Raises AmountConversionError if the value loses precision at ``decimals``
    fractional digits or does not fit in a uint256.
    """
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise AmountConversionError(f"Cannot convert amount {amount!r}")
    if not value.is_finite() or value < 0:
        raise AmountConversionError(f"Cannot convert amount {amount!r}")
    if value == 0:
        return 0
    # uint256 max has 78 digits
    if value.adjusted() + decimals > 77:
        raise AmountConversionError(f"Amount {amount} overflows uint256")

    _, digits, exponent = value.as_tuple()
    coefficient = int("".join(str(d) for d in digits))
    shift = exponent + decimals  # type: ignore[operator]
    if shift >= 0:
        units = coefficient * 10**shift
    else:
        divisor = 10**-shift if -shift <= len(digits) else 0
        if not divisor or coefficient % divisor:
            raise AmountConversionError(f"Amount {amount} has more than {decimals} fractional digits")
        units = coefficient // divisor

    if units > UINT256_MAX:
        raise AmountConversionError(f"Amount {amount} overflows uint256")
    return units
