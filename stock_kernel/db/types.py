"""
Module: stock_kernel.db.types
Responsibility: Storage precision constants and the canonical quantity
    coercion used by every model and service, so that no code path lets a
    binary float into the ledger.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in the ledger.  to_quantity() rejects float, bool,
      NaN, and infinities with InvalidQuantityError.
    - QUANTITY_DECIMAL_PLACES is the storage precision of every quantity
      column; RATIO_DECIMAL_PLACES that of conversion ratios.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from stock_kernel.exceptions import InvalidQuantityError

QUANTITY_DECIMAL_PLACES = 9
RATIO_DECIMAL_PLACES = 18
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


def to_quantity(value: object, *, field: str = "quantity") -> Decimal:
    """
    Coerce a caller-supplied value to an exact, finite Decimal.

    Accepts Decimal, int, and numeric strings.  Floats are refused rather than
    converted: a float has already lost exactness before it reaches us.

    Raises:
        InvalidQuantityError: If the value is a float/bool, is not numeric,
            or is NaN / infinite.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidQuantityError(value, f"{field} must be Decimal, int, or str, not {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise InvalidQuantityError(value, f"{field} is not a number") from exc
    else:
        raise InvalidQuantityError(value, f"{field} has unsupported type {type(value).__name__}")

    if not result.is_finite():
        raise InvalidQuantityError(value, f"{field} must be finite")
    return result


def round_quantity(
    value: Decimal,
    decimal_places: int = QUANTITY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a quantity to the storage precision.

    This is the ONLY sanctioned rounding function for quantities: derived
    values (units * ratio) are rounded here before they touch a cell.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "0"
    return value.quantize(Decimal(quantize_str), rounding=rounding)
