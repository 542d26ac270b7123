"""Tolerant numeric conversion for values coming off the OpenF1 API."""
import math


def safe_int(value, default=1):
    """
    Convert a value to an integer, truncating toward zero.

    OpenF1 sends integer fields as ints, floats (``3.0``) or strings, and
    pandas turns missing ones into NaN; anything that is not a finite number
    returns ``default``.

    Examples:
        >>> safe_int("42")
        42
        >>> safe_int("3.0")
        3
        >>> safe_int(float("nan"), default=None) is None
        True
    """
    number = safe_float(value)
    if number is None:
        return default
    return int(number)


def safe_float(value, default=None):
    """
    Convert a value to a finite float.

    NaN, infinities, ``None`` and strings such as ``"+1 LAP"`` all return ``default``.

    Examples:
        >>> safe_float("1.25")
        1.25
        >>> safe_float("+1 LAP", default=0.0)
        0.0
        >>> safe_float(float("nan")) is None
        True
    """
    if isinstance(value, bool):
        return float(value)
    try:
        result = float(value)
    except (ValueError, TypeError):
        return default
    if not math.isfinite(result):
        return default
    return result


def finite_or_default(value, default=0.0):
    """Return ``value`` if it is a finite number, else ``default``."""
    try:
        if math.isfinite(value):
            return value
    except TypeError:
        pass
    return default
