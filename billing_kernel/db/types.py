"""
Module: billing_kernel.db.types
Responsibility: Annotated column type aliases and the single sanctioned
    rounding function for money.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/ and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Money is Numeric(38, 9); quantities are Numeric(20, 6); tax rates are
      Numeric(9, 4).
    - round_money() is the ONLY rounding function for document totals.
      Rounding happens once, on aggregates (2 places, ROUND_HALF_UP).
    - No float arithmetic.  to_decimal() converts floats through their
      shortest repr, so 0.1 is stored as Decimal("0.1"), never the binary
      expansion.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Annotated, Any

from sqlalchemy import Numeric, String


# Monetary amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# Stock quantity: fractional units (kg, litres) up to 6 places
Quantity = Annotated[Decimal, Numeric(20, 6)]

# Percentage rate (GST rate, discount percentage)
Rate = Annotated[Decimal, Numeric(9, 4)]

# Short identifier strings
ShortCode = Annotated[str, String(50)]

# Long text for descriptions and notes
LongText = Annotated[str, String(4000)]


MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Convert a payload value to Decimal.

    Accepts Decimal, int and numeric strings.  Floats are converted through
    their shortest repr (``str(0.1) == "0.1"``) so JSON payloads decoded with
    the stdlib do not leak binary noise into stored amounts.

    Raises:
        ValueError: If the value is not numeric.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"{field} must be numeric, got bool")
    if isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"{field} must be numeric, got {value!r}") from exc
        if not result.is_finite():
            raise ValueError(f"{field} must be finite, got {value!r}")
        return result
    raise ValueError(f"{field} must be numeric, got {type(value).__name__}")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    Preconditions: value is a Decimal.
    Postconditions: Returns value quantized with the given rounding mode.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "1"
    return value.quantize(Decimal(quantize_str), rounding=rounding)
