"""
Tolerant parsing shared by every aggregation call site.

Source rows arrive with display-formatted strings ("1,234.5", "$45.6M",
"12%") or plain numbers. Each helper strips currency symbols, thousands
separators and percent signs, then reads the leading numeric prefix.

Default-on-failure policy per call site:
  - summation contexts use parse_number(..., default=0.0)
  - filter contexts use parse_optional_number and treat None as "fails"
"""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Optional, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

_STRIP_CHARS = str.maketrans("", "", "$,%")
_NUMERIC_PREFIX = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def safe_str(x) -> str:
    if x is None:
        return ""
    try:
        if pd.isna(x):
            return ""
    except (TypeError, ValueError):
        pass
    return str(x).strip()


def parse_optional_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return None if math.isnan(f) or math.isinf(f) else f

    text = safe_str(value).translate(_STRIP_CHARS).strip()
    m = _NUMERIC_PREFIX.match(text)
    if not m:
        if text:
            logger.debug("could not parse numeric value %r", value)
        return None
    return float(m.group(0))


def parse_number(value: Any, default: float = 0.0) -> float:
    parsed = parse_optional_number(value)
    return default if parsed is None else parsed


def parse_year(value: Any) -> Optional[int]:
    parsed = parse_optional_number(value)
    return None if parsed is None else int(parsed)


def parse_coordinate(value: Any) -> Optional[float]:
    # No currency stripping here: "$12" is not a coordinate.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return None if math.isnan(f) or math.isinf(f) else f
    text = safe_str(value)
    if not text:
        return None
    try:
        f = float(text)
    except ValueError:
        logger.debug("could not parse coordinate %r", value)
        return None
    return None if math.isnan(f) or math.isinf(f) else f


def parse_coordinate_pair(value: Any) -> Tuple[Optional[float], Optional[float]]:
    """Parse a "lat, lon" string. Returns (None, None) when unusable."""
    text = safe_str(value)
    if "," not in text:
        return None, None
    lat_s, lon_s = text.split(",", 1)
    lat, lon = parse_coordinate(lat_s), parse_coordinate(lon_s)
    if lat is None or lon is None:
        return None, None
    return lat, lon
