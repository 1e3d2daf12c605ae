"""Minisector status codes as reported by the timing feed."""
from typing import Any

SEGMENT_CATEGORIES = {
    2048: "yellow",
    2049: "green",
    2051: "purple",
    2064: "pit-lane",
    0: "empty",
}


def segment_category(value: Any) -> str:
    """Map a minisector value to its display category."""
    if isinstance(value, bool):
        return "unknown"
    try:
        return SEGMENT_CATEGORIES.get(int(value), "unknown")
    except (TypeError, ValueError):
        return "unknown"
