"""Conversions between token base units and decimal strings."""

MIN_DISPLAY_PLACES = 2


def format_units(raw_amount: int, decimals: int, min_places: int = MIN_DISPLAY_PLACES) -> str:
    """
    Render base units as a decimal string.

    At least ``min_places`` fractional digits are shown; further digits
    appear only when non-zero, so the string always parses back to the
    exact amount.

    Parameters
    ----------
    raw_amount : int
        Amount in base units
    decimals : int
        Token decimal precision
    min_places : int
        Minimum number of fractional digits

    Returns
    -------
    str
        Decimal representation, e.g. ``10_000_000`` with 6 decimals
        gives ``"10.00"``
    """
    if decimals < 0:
        raise ValueError("decimals must be non-negative")

    sign = "-" if raw_amount < 0 else ""
    whole, fraction = divmod(abs(raw_amount), 10 ** decimals)

    digits = str(fraction).rjust(decimals, "0").rstrip("0") if decimals else ""
    digits = digits.ljust(min_places, "0")

    if not digits:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{digits}"


def parse_units(text: str, decimals: int) -> int:
    """
    Parse a decimal string into base units.

    Parameters
    ----------
    text : str
        Decimal string such as ``"10.50"``
    decimals : int
        Token decimal precision

    Returns
    -------
    int
        Amount in base units

    Raises
    ------
    ValueError
        If the text is malformed or more precise than ``decimals``
    """
    value = text.strip()
    sign = 1
    if value.startswith("-"):
        sign, value = -1, value[1:]

    if value in ("", "."):
        raise ValueError(f"Invalid decimal amount: {text!r}")

    whole, _, fraction = value.partition(".")
    if not whole:
        whole = "0"
    if not whole.isdigit() or (fraction and not fraction.isdigit()):
        raise ValueError(f"Invalid decimal amount: {text!r}")

    significant = fraction.rstrip("0")
    if len(significant) > decimals:
        raise ValueError(f"Amount {text!r} exceeds {decimals} decimal places")

    units = int(whole) * 10 ** decimals
    if significant:
        units += int(significant.ljust(decimals, "0"))
    return sign * units
