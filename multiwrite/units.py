"""Human-readable byte sizes."""

import math

UNITS = ["B", "kB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB"]


def prettybytes(num: float) -> str:
    """Format a byte count, e.g. ``1536`` -> ``"1.5 kB"``.

    The unit is picked by decimal magnitude while the value is scaled by
    powers of 1024. Negative values keep their sign.
    """
    prefix = "-" if num < 0 else ""
    num = abs(num)

    if num < 1:
        return f"{prefix}{num:g} B"

    exponent = min(int(math.floor(math.log10(num) / 3)), len(UNITS) - 1)
    text = f"{num / 1024**exponent:.1f}"
    if text.endswith(".0"):
        text = text[:-2]

    return f"{prefix}{text} {UNITS[exponent]}"


__all__ = ["UNITS", "prettybytes"]
