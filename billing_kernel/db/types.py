"""
Module: billing_kernel.db.types
Responsibility: money coercion and rounding helpers.
    Centralizes precision so that every model and service quantizes amounts
    identically.
Architecture position: Kernel > DB.  May be imported by models, engines and
    services.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere.  All monetary amounts are Decimal stored as
      Numeric(38, 9) and quantized to the currency's minor unit on entry.
    - round_money() is the ONLY sanctioned rounding function.

Failure modes:
    - InvalidAmountError from to_money() on floats or unparseable input.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from billing_kernel.exceptions import InvalidAmountError

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0.00")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the currency's minor unit.

    This is the ONLY sanctioned rounding function for financial values.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places else "0"
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def to_decimal(value: Decimal | int | str, field: str = "amount") -> Decimal:
    """
    Coerce caller input to a finite Decimal at full scale.

    Floats are rejected outright; binary fractions cannot represent cents.

    Raises:
        InvalidAmountError: On float input, an unparseable string or NaN/Infinity.
    """
    if isinstance(value, float):
        raise InvalidAmountError(field, Decimal(str(value)), "floats are not accepted")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(field, Decimal(0), f"not a number: {value!r}") from None
    if not amount.is_finite():
        raise InvalidAmountError(field, amount, "must be finite")
    return amount


def to_money(value: Decimal | int | str, field: str = "amount") -> Decimal:
    """to_decimal() quantized to cents."""
    return round_money(to_decimal(value, field))


def positive_money(value: Decimal | int | str, field: str = "amount") -> Decimal:
    """to_money() that also rejects zero and negative amounts."""
    amount = to_money(value, field)
    if amount <= 0:
        raise InvalidAmountError(field, amount)
    return amount


def sum_money(values) -> Decimal:
    """Exact Decimal sum, quantized; never starts from int 0."""
    total = ZERO
    for v in values:
        total += v
    return round_money(total)
