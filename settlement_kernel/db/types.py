"""
Module: settlement_kernel.db.types
Responsibility: Decimal coercion and the single sanctioned rounding
    function for monetary values.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats.  Every monetary column is Numeric(18, 2) and every
      in-memory amount is a Decimal.
    - round_money() is the ONLY rounding function for money.  It uses
      banker's rounding (ROUND_HALF_EVEN) so that rounding error does not
      drift in one direction over many transactions.

Failure modes:
    - decimal.InvalidOperation from to_money() on non-numeric input.
    - TypeError from to_money() when handed a float.
"""

from decimal import ROUND_HALF_EVEN, Decimal

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_EVEN
ZERO = Decimal("0.00")


def to_money(value: Decimal | int | str) -> Decimal:
    """
    Coerce a caller-supplied value to Decimal without rounding.

    Floats are refused outright: converting a float silently imports its
    binary representation error into the ledger.

    Raises:
        TypeError: if value is a float.
        decimal.InvalidOperation: if value is not numeric.
    """
    if isinstance(value, float):
        raise TypeError("float amounts are not accepted; pass Decimal or str")
    if isinstance(value, Decimal):
        return value
    return Decimal(value)


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    This is the ONLY sanctioned rounding function for financial values.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: Rounding mode (default: ROUND_HALF_EVEN).

    Returns:
        Rounded Decimal value.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "0"
    return value.quantize(Decimal(quantize_str), rounding=rounding)
