from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_money(value) -> Decimal:
    """Coerce DB/JSON numerics to a 2-place Decimal, rounding half up"""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount, rate) -> Decimal:
    """`amount * rate / 100` rounded to cents"""
    return to_money(to_money(amount) * Decimal(str(rate)) / HUNDRED)
