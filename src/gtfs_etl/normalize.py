"""Normalization functions for GTFS feed values.

All parsers accept the raw cell value (usually str, sometimes already typed)
and return the coerced value or None. None of them raise.
"""

from __future__ import annotations

import math
import re
from typing import Any

_TRUE_FLAGS = frozenset({"1", "true"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: parse_decimal
# ---------------------------------------------------------------------------

def parse_decimal(value: Any) -> float | None:
    """Parse a floating-point number, returning None when empty, invalid or non-finite."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        v = trim(value)
        if v is None:
            return None
        try:
            number = float(v)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


# ---------------------------------------------------------------------------
# Rule 3: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: Any) -> int | None:
    """Parse an integer.

    '3' → 3, '3.0' → 3 (integral decimals are accepted), '3.5' → None,
    '' / 'abc' → None.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    v = trim(value)
    if v is None:
        return None
    try:
        return int(v)
    except ValueError:
        pass
    number = parse_decimal(v)
    if number is None or not number.is_integer():
        return None
    return int(number)


# ---------------------------------------------------------------------------
# Rule 4: parse_flag
# ---------------------------------------------------------------------------

def parse_flag(value: Any) -> bool:
    """'1', 1 and 'true' (any case) are True; everything else is False."""
    if value is True:
        return True
    if isinstance(value, int) and not isinstance(value, bool):
        return value == 1
    v = trim(value)
    return v is not None and v.lower() in _TRUE_FLAGS


# ---------------------------------------------------------------------------
# Rule 5: parse_coordinate
# ---------------------------------------------------------------------------

def parse_coordinate(value: Any) -> float | None:
    """Latitude/longitude use plain float semantics; None on failure."""
    return parse_decimal(value)


# ---------------------------------------------------------------------------
# Rule 6: sub_source_suffix
# ---------------------------------------------------------------------------

def sub_source_suffix(sub_source_name: str) -> str:
    """Identifier suffix for a sub-source: whitespace runs become '_'."""
    return re.sub(r"\s+", "_", sub_source_name.strip())


def suffixed_id(identifier: str, sub_source_name: str) -> str:
    """'R1' + 'Night Bus' → 'R1_Night_Bus'."""
    return f"{identifier}_{sub_source_suffix(sub_source_name)}"


def id_prefix(identifier: str) -> str:
    """Part of an identifier before the first '_' ('AG_NORTH' → 'AG')."""
    return identifier.split("_", 1)[0]
