"""
Display formatting for cell values.
"""
import math
import re
from typing import Any, Optional

_PRECISION_RE = re.compile(r"^(decimal|comma)\.(\d+)$")


def format_value(value: Any, fmt: Optional[str] = None, percent_decimals: int = 1) -> str:
    """
    Format a raw cell value.

    Args:
        value: Number or None
        fmt: currency | percent | integer | decimal.N | comma.N | none
        percent_decimals: Decimals used by the percent format

    Returns:
        The display string; an empty string for a null value.
    """
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""

    fmt = (fmt or "none").lower()

    if fmt == "currency":
        sign = "-" if value < 0 else ""
        return f"{sign}${abs(value):,.2f}"
    if fmt == "percent":
        return f"{value * 100:.{percent_decimals}f}%"
    if fmt == "integer":
        return f"{value:,.0f}"

    m = _PRECISION_RE.match(fmt)
    if m:
        return f"{value:,.{int(m.group(2))}f}"

    if isinstance(value, int) or (isinstance(value, float) and value.is_integer()):
        return f"{int(value):,d}"
    text = f"{value:,.2f}"
    return text.rstrip("0").rstrip(".")
