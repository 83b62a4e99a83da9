"""
Numeric helpers shared by the performance engine.

All rounding goes through Decimal so that 89.95 rounds to 90.0 the way a
report card shows it, instead of the banker's rounding that
float round() applies.
"""
from decimal import Decimal, ROUND_HALF_UP


def to_decimal(value):
    """
    Convert a number to Decimal without picking up binary float noise.

    Args:
        value: int, float, str or Decimal

    Returns:
        Decimal
    """
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(value, places=1):
    """
    Round a number half-up to a fixed number of decimal places.

    Args:
        value: Number to round (None passes through)
        places: Decimal places to keep (0 for whole numbers)

    Returns:
        Decimal, or None if value is None
    """
    if value is None:
        return None
    quantum = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def percentage(part, whole, places=1):
    """
    part / whole * 100, rounded half-up. Returns None when whole is zero.
    """
    whole = to_decimal(whole)
    if whole == 0:
        return None
    return round_half_up(to_decimal(part) / whole * 100, places)


def mean(values, places=1):
    """Arithmetic mean of the non-None values, or None if there are none."""
    present = [to_decimal(v) for v in values if v is not None]
    if not present:
        return None
    return round_half_up(sum(present) / len(present), places)


def as_number(value):
    """Decimal -> float for JSON output; whole numbers become int."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        if value == value.to_integral_value() and value.as_tuple().exponent >= 0:
            return int(value)
        return float(value)
    return value
