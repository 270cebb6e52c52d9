"""
Convert driver result sets into the fixed response contract.

Every value leaving this module is None, bool, int, float or str. asyncpg
hands back Decimals, datetimes, UUIDs, bytes, arrays, ranges and records;
those are flattened to a stable textual or numeric form here so the UI never
sees a driver-specific type.
"""

from __future__ import annotations

import datetime as dt
import json
import math
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Sequence

from .models import QuerySuccess, Scalar


def _format_interval(value: dt.timedelta) -> str:
    """ISO-8601 duration, e.g. ``P1DT2H30M`` or ``-PT5S``."""
    total = value.total_seconds()
    sign = "-" if total < 0 else ""
    total = abs(total)
    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)

    out = f"{sign}P"
    if days:
        out += f"{int(days)}D"
    time_part = ""
    if hours:
        time_part += f"{int(hours)}H"
    if minutes:
        time_part += f"{int(minutes)}M"
    if seconds or not (days or hours or minutes):
        time_part += f"{seconds:.6f}".rstrip("0").rstrip(".") + "S"
    if time_part:
        out += f"T{time_part}"
    return out


def _format_range(value: Any) -> str:
    if getattr(value, "isempty", False):
        return "empty"
    lower = "" if value.lower is None else str(to_scalar(value.lower))
    upper = "" if value.upper is None else str(to_scalar(value.upper))
    left = "[" if value.lower_inc else "("
    right = "]" if value.upper_inc else ")"
    return f"{left}{lower},{upper}{right}"


def _to_json_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_to_json_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _to_json_value(item) for key, item in value.items()}
    if hasattr(value, "items") and hasattr(value, "keys"):
        # asyncpg.Record for composite types
        return {str(key): _to_json_value(item) for key, item in value.items()}
    return to_scalar(value)


def to_scalar(value: Any) -> Scalar:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value):
            return value
        return "NaN" if math.isnan(value) else ("Infinity" if value > 0 else "-Infinity")
    if isinstance(value, Decimal):
        if not value.is_finite():
            return "NaN" if value.is_nan() else ("Infinity" if value > 0 else "-Infinity")
        if value == value.to_integral_value() and value.as_tuple().exponent >= 0:
            return int(value)
        return float(value)
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return _format_interval(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    if isinstance(value, (list, tuple, Mapping)) or (
        hasattr(value, "items") and hasattr(value, "keys")
    ):
        return json.dumps(_to_json_value(value))
    if hasattr(value, "lower_inc") and hasattr(value, "upper_inc"):
        return _format_range(value)
    # UUID, inet/cidr, BitString, geometric types, enums
    return str(value)


def _row_values(row: Any) -> List[Any]:
    if hasattr(row, "values") and callable(row.values):
        return list(row.values())
    return list(row)


def normalize_result(
    columns: Sequence[str],
    rows: Iterable[Any],
    limited: bool,
) -> QuerySuccess:
    """Build the success payload for already-truncated *rows*."""
    names = [str(name) for name in columns]
    normalized = []
    for row in rows:
        values = _row_values(row)
        normalized.append(
            {name: to_scalar(value) for name, value in zip(names, values)}
        )
    return QuerySuccess(
        columns=names,
        rows=normalized,
        row_count=len(normalized),
        limited=limited,
    )
