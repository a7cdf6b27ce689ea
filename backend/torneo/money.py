"""Money and commission arithmetic.

All amounts are ``Decimal`` quantized to cents with ROUND_HALF_UP. Binary
floats are rejected outright.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from torneo.utils.errors import InvalidArgumentError

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
ONE = Decimal("1")

# Storage precision: NUMERIC(5, 4) rates, NUMERIC(10, 2) fees and prices,
# NUMERIC(12, 2) prize pools.
RATE_PLACES = 4
RATE_STEP = Decimal("0.0001")
MAX_AMOUNT = Decimal("99999999.99")
MAX_PRIZE_POOL = Decimal("9999999999.99")


def to_decimal(value: Decimal | int | str, field: str = "amount") -> Decimal:
    """Convert to Decimal, refusing floats and non-finite values."""
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidArgumentError(field, "use Decimal, int or str, not float")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise InvalidArgumentError(field, f"not a number: {value!r}") from exc
    else:
        raise InvalidArgumentError(field, f"unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise InvalidArgumentError(field, "must be finite")
    return result


def quantize_money(amount: Decimal) -> Decimal:
    """Round to 2 decimal places, half up."""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def validate_rate(rate: Decimal | int | str, field: str = "commission_rate") -> Decimal:
    """Return the rate as Decimal, requiring 0 <= rate <= 1 and at most 4 places."""
    value = to_decimal(rate, field)
    if value < 0 or value > ONE:
        raise InvalidArgumentError(field, "must be between 0 and 1")
    if value.quantize(RATE_STEP) != value:
        raise InvalidArgumentError(
            field, f"at most {RATE_PLACES} decimal places allowed"
        )
    return value


def validate_amount(
    amount: Decimal | int | str,
    field: str = "amount",
    maximum: Decimal = MAX_AMOUNT,
) -> Decimal:
    """Return a non-negative amount quantized to cents, no larger than ``maximum``."""
    value = to_decimal(amount, field)
    if value < 0:
        raise InvalidArgumentError(field, "must not be negative")
    value = quantize_money(value)
    if value > maximum:
        raise InvalidArgumentError(field, f"must not exceed {maximum}")
    return value


def calculate_commission(price: Decimal, rate: Decimal) -> Decimal:
    """commission = round(price * rate, 2)."""
    return quantize_money(to_decimal(price, "price") * to_decimal(rate, "rate"))


def net_amount(price: Decimal, commission: Decimal) -> Decimal:
    """net = price - commission."""
    return quantize_money(price - commission)


def calculate_total_commission(
    entry_fee: Decimal,
    participants: int,
    rate: Decimal,
) -> Decimal:
    """Commission estimate over a participant count."""
    if participants < 0:
        raise InvalidArgumentError("participants", "must not be negative")
    return quantize_money(entry_fee * participants * rate)
