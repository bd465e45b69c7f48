# Meridian credit amounts
# Decimal in Python, integer units of CREDIT_QUANTUM in storage.
#
# Storage never sees a float. Anything finer than the quantum is rejected
# rather than silently rounded; the only rounding in the system is the
# explicit earnings split in settlement.py.

from decimal import Decimal, InvalidOperation
from typing import Optional

CREDIT_QUANTUM = Decimal("0.0001")
UNITS_PER_CREDIT = 10_000

# Units are bound as signed 64-bit integers by both backends.
MAX_UNITS = 2**63 - 1

ZERO = Decimal("0")


def to_decimal(amount) -> Decimal:
    """Coerce an int, str, float or Decimal amount to Decimal.

    Floats go through repr() so 0.1 stays 0.1 instead of its binary
    expansion.
    """
    if isinstance(amount, bool) or amount is None:
        raise ValueError(f"Invalid amount: {amount!r}")
    if isinstance(amount, Decimal):
        value = amount
    else:
        try:
            value = Decimal(repr(amount) if isinstance(amount, float) else str(amount).strip())
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return value


def to_units(amount) -> int:
    """Convert a credit amount to integer storage units."""
    value = to_decimal(amount)
    scaled = value * UNITS_PER_CREDIT
    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"Amount {value} is finer than the credit quantum {CREDIT_QUANTUM}"
        )
    units = int(scaled)
    if abs(units) > MAX_UNITS:
        raise ValueError(f"Amount {value} is too large")
    return units


def from_units(units) -> Optional[Decimal]:
    if units is None:
        return None
    return (Decimal(int(units)) / UNITS_PER_CREDIT).quantize(CREDIT_QUANTUM)


def as_number(amount):
    """JSON-friendly rendering of an amount."""
    if amount is None:
        return None
    return float(amount)
