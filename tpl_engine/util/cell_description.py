"""
The per-cell "Dim: Val, Dim: Val → measure" string shown as a tooltip.
"""
import re
from typing import List, Optional, Sequence, Tuple

ARROW = "→"
_ARROW_RE = re.compile(r"\s*(?:->|→)\s*")


def describe_cell(pairs: Sequence[Tuple[str, str]], measure: str) -> str:
    dims = ", ".join(f"{dim}: {value}" for dim, value in pairs)
    if not dims:
        return measure
    return f"{dims} {ARROW} {measure}"


def parse_cell_description(text: str) -> Tuple[List[Tuple[str, str]], Optional[str]]:
    """
    Split a description back into ``(dimension, value)`` pairs and the measure.

    Accepts ``->`` or ``→`` as the separator. Pairs without a colon are skipped.
    A text with no arrow is read as pairs only, and the measure is None.
    """
    if not text:
        return [], None

    parts = _ARROW_RE.split(text.strip(), maxsplit=1)
    dims_text = parts[0]
    measure = parts[1].strip() if len(parts) > 1 else None

    pairs = []
    for chunk in dims_text.split(","):
        if ":" not in chunk:
            continue
        dim, value = chunk.split(":", 1)
        dim = dim.strip()
        if not dim:
            continue
        pairs.append((dim, value.strip()))
    return pairs, measure or None
