"""
Utility functions for working with models and schemas.

Provides helper functions for:
- Lenient numeric parsing of hand-entered form values
- Half-up rounding and percentage clamping used by every report
- Name normalization for case-insensitive matching
"""

import math
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional


_WHITESPACE = re.compile(r"\s+")


def is_blank(value: Any) -> bool:
    """True for None and empty or whitespace-only strings."""
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def parse_score(value: Any) -> Optional[float]:
    """
    Parse a form value into a non-negative finite number.

    Blank, non-numeric, boolean, negative, NaN and infinite values all give
    None. Never raises.
    """
    if is_blank(value) or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", ""))
        except ValueError:
            return None
    else:
        return None

    if math.isnan(number) or math.isinf(number) or number < 0:
        return None
    return number


def round_half_up(value: float, places: int = 1) -> float:
    """Round like a person would: 0.05 -> 0.1, 2.25 -> 2.3."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def clamp_percent(value: float) -> float:
    """Clamp a percentage into [0, 100]."""
    return max(0.0, min(100.0, value))


def percent(part: float, whole: float, places: int = 1) -> float:
    """part / whole as a rounded, clamped percentage; 0 when whole is 0."""
    if whole <= 0:
        return 0.0
    return round_half_up(clamp_percent(part / whole * 100), places)


def mean(values) -> Optional[float]:
    """Arithmetic mean, or None for an empty sequence."""
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)


def normalize_name(value: Optional[str]) -> str:
    """
    Case- and whitespace-insensitive key for names typed by field staff.

    Equal to the PostgreSQL duplicate-record key in database.queries.
    """
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value.strip()).lower()
