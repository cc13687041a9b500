"""Fixed-precision money helpers.

All amounts are ``Decimal`` values quantized to the minor unit (cents).
Floats are converted through ``str`` first so binary drift never reaches
the ledger.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any

from pydantic import BeforeValidator, PlainSerializer

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
MINOR_UNITS_PER_MAJOR = 100


def to_money(value: Any) -> Decimal:
    """
    Normalize a number to a Decimal with exactly two places.

    Uses ROUND_HALF_UP for consistency.

    Args:
        value: int, str, float or Decimal amount

    Returns:
        Amount quantized to the minor unit
    """
    if isinstance(value, bool):
        raise ValueError("Booleans are not money")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Not a money amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not a money amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    """Convert a money amount to integer minor units."""
    return int(to_money(amount) * MINOR_UNITS_PER_MAJOR)


def from_cents(cents: int) -> Decimal:
    """Convert integer minor units back to a money amount."""
    return (Decimal(cents) / MINOR_UNITS_PER_MAJOR).quantize(CENT)


def sign(amount: Decimal) -> int:
    """Return -1, 0 or 1."""
    if amount > 0:
        return 1
    if amount < 0:
        return -1
    return 0


def sum_money(amounts) -> Decimal:
    """Sum amounts, starting from ZERO so an empty sum is still money."""
    total = ZERO
    for amount in amounts:
        total += amount
    return to_money(total)


Money = Annotated[
    Decimal,
    BeforeValidator(to_money),
    PlainSerializer(lambda amount: str(amount), return_type=str, when_used="json"),
]
