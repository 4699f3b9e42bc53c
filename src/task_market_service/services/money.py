"""Fixed-point money helpers.

Amounts are ``Decimal`` values with two decimal places in the domain and
integer minor units (cents) in the database. Floats are rejected outright.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

from task_market_service.core.exceptions import ServiceError

SCALE = Decimal("0.01")
ZERO = Decimal("0.00")
_MINOR_UNITS = 100

# Both limits stay far below SQLite's signed 64-bit INTEGER once in cents.
MAX_AMOUNT = Decimal("1000000000.00")
MAX_BALANCE = Decimal("1000000000000.00")


def parse_amount(value: object, field_name: str = "amount") -> Decimal:
    """
    Parse an input amount into a 2-place Decimal.

    Accepts ``Decimal``, ``int`` and numeric strings. Values with more than
    two decimal places are rejected rather than silently rounded.

    Raises:
        ServiceError: INVALID_AMOUNT on floats, booleans, garbage, or
            precision beyond cents, or values above ``MAX_AMOUNT``.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ServiceError(
            "INVALID_AMOUNT",
            f"{field_name} must be a decimal string or integer",
            400,
            {"field": field_name},
        )

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ServiceError(
                "INVALID_AMOUNT",
                f"{field_name} is not a valid decimal",
                400,
                {"field": field_name},
            ) from exc
    else:
        raise ServiceError(
            "INVALID_AMOUNT",
            f"{field_name} must be a decimal string or integer",
            400,
            {"field": field_name},
        )

    if not amount.is_finite():
        raise ServiceError(
            "INVALID_AMOUNT",
            f"{field_name} must be finite",
            400,
            {"field": field_name},
        )

    if abs(amount) > MAX_AMOUNT:
        raise ServiceError(
            "INVALID_AMOUNT",
            f"{field_name} must not exceed {MAX_AMOUNT}",
            400,
            {"field": field_name, "max": str(MAX_AMOUNT)},
        )

    try:
        quantized = amount.quantize(SCALE)
    except InvalidOperation as exc:
        raise ServiceError(
            "INVALID_AMOUNT",
            f"{field_name} is not a valid decimal",
            400,
            {"field": field_name},
        ) from exc
    if quantized != amount:
        raise ServiceError(
            "INVALID_AMOUNT",
            f"{field_name} must have at most two decimal places",
            400,
            {"field": field_name},
        )
    return quantized


def parse_positive_amount(value: object, field_name: str = "amount") -> Decimal:
    """Parse an amount and require it to be strictly positive."""
    amount = parse_amount(value, field_name)
    if amount <= ZERO:
        raise ServiceError(
            "INVALID_AMOUNT",
            f"{field_name} must be greater than zero",
            400,
            {"field": field_name},
        )
    return amount


def to_cents(amount: Decimal) -> int:
    """Convert a 2-place Decimal to integer minor units."""
    return int((amount.quantize(SCALE) * _MINOR_UNITS).to_integral_value())


def from_cents(cents: int) -> Decimal:
    """Convert integer minor units to a 2-place Decimal."""
    return (Decimal(cents) / _MINOR_UNITS).quantize(SCALE)


def round_fee(amount: Decimal, rate: Decimal) -> Decimal:
    """Platform fee for ``amount`` at ``rate``, banker's-rounded to cents once."""
    return (amount * rate).quantize(SCALE, rounding=ROUND_HALF_EVEN)


def split_payment(amount: Decimal, rate: Decimal) -> tuple[Decimal, Decimal]:
    """
    Split a payment into (fee, payout).

    The payout is always ``amount - fee`` so that
    ``amount == fee + payout`` holds exactly.
    """
    fee = round_fee(amount, rate)
    return fee, amount - fee


def format_amount(amount: Decimal) -> str:
    """Render an amount for JSON responses."""
    return str(amount.quantize(SCALE))
