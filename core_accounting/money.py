"""
Money Module

Fixed-point Decimal helpers for monetary amounts, unit costs and the
tax-inclusive IVA split. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Tuple, Union

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

CURRENCY_CODE = "BOB"
CURRENCY_SYMBOL = "Bs"

ZERO = Decimal("0")
CENT = Decimal("0.01")

# Equality tolerance for balance checks (strictly less than one cent)
TOLERANCE = Decimal("0.01")

# Bolivian IVA, baked into every sale price
IVA_RATE = Decimal("0.13")
IVA_DIVISOR = Decimal("1") + IVA_RATE

DEFAULT_COST_PRECISION = 6

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number) -> Decimal:
    """
    Convert a value to Decimal without passing through binary floating point.

    Floats are converted via their shortest string repr, the same way
    Decimal(str(x)) would, so 0.1 becomes Decimal('0.1').

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a monetary value: {value!r}")
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"Not a monetary value: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Not a monetary value: {value!r}")
    return result


def round_money(value: Number) -> Decimal:
    """Round to cents using ROUND_HALF_UP"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_cost(value: Number, precision: int = DEFAULT_COST_PRECISION) -> Decimal:
    """Round a unit cost to the configured number of decimal places"""
    return to_decimal(value).quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


def amounts_equal(left: Number, right: Number, tolerance: Decimal = TOLERANCE) -> bool:
    """Check two amounts are equal within tolerance (never exact float compare)"""
    return abs(to_decimal(left) - to_decimal(right)) < tolerance


def is_zero(value: Number) -> bool:
    """Check if an amount rounds to zero cents"""
    return round_money(value) == ZERO


def split_tax_inclusive(total: Number) -> Tuple[Decimal, Decimal]:
    """
    Split a tax-inclusive total into (subtotal, iva).

    Prices already contain the 13% IVA, so the tax is back-calculated:
    subtotal = total / 1.13 and iva = total - subtotal. The iva is derived
    from the rounded subtotal so both parts always add up to the total.

    Args:
        total: Tax-inclusive amount

    Returns:
        Tuple of (subtotal, iva), both rounded to cents
    """
    total = round_money(total)
    subtotal = round_money(total / IVA_DIVISOR)
    return subtotal, total - subtotal


def format_money(amount: Number) -> str:
    """Format for display"""
    return f"{CURRENCY_SYMBOL} {round_money(amount):,.2f}"
