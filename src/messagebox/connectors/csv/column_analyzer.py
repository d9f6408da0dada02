"""
Column type inference for CSV data.

Picks the narrowest SQL Server type that holds every non-empty value of a
column, so destination tables can be created from a source file.
"""

import re
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Sequence

from ...core.connector import ColumnTypeInfo


NVARCHAR_STEPS = [50, 100, 255, 500, 1000, 4000]
DEFAULT_NVARCHAR_LENGTH = 255
MIN_DECIMAL_PRECISION = 18
MIN_DECIMAL_SCALE = 2
MAX_DECIMAL_PRECISION = 38

INT_MIN = -2**31
INT_MAX = 2**31 - 1

_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_DECIMAL_PATTERN = re.compile(r"^[+-]?(\d+)(?:\.(\d+))?$|^[+-]?\.(\d+)$")
_BOOLEAN_VALUES = {"true", "false"}
_DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S.%f",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%d.%m.%Y",
]


def _is_guid(value: str) -> bool:
    if len(value) not in (32, 36, 38):
        return False
    try:
        uuid.UUID(value)
        return True
    except ValueError:
        return False


def _is_int(value: str) -> bool:
    return bool(_INT_PATTERN.match(value)) and INT_MIN <= int(value) <= INT_MAX


def _is_datetime(value: str) -> bool:
    for fmt in _DATE_FORMATS:
        try:
            datetime.strptime(value, fmt)
            return True
        except ValueError:
            continue
    try:
        datetime.fromisoformat(value)
        return True
    except ValueError:
        return False


def _nvarchar_length(values: Sequence[str]) -> int:
    """Round the longest value up to the next length step, or -1 for MAX."""
    longest = max((len(v) for v in values), default=0)
    for step in NVARCHAR_STEPS:
        if longest <= step:
            return step
    return -1


def _decimal_info(values: Sequence[str]) -> ColumnTypeInfo:
    integer_digits = 1
    scale = 0
    for value in values:
        match = _DECIMAL_PATTERN.match(value)
        whole = match.group(1) or ""
        fraction = match.group(2) or match.group(3) or ""
        integer_digits = max(integer_digits, len(whole.lstrip("0")) or 1)
        scale = max(scale, len(fraction))

    scale = min(max(scale, MIN_DECIMAL_SCALE), MAX_DECIMAL_PRECISION - 1)
    precision = min(max(integer_digits + scale, MIN_DECIMAL_PRECISION), MAX_DECIMAL_PRECISION)
    return ColumnTypeInfo(data_type="DECIMAL", precision=precision, scale=scale)


def analyze_column(values: Iterable[str]) -> ColumnTypeInfo:
    """
    Infer the SQL type of one column.

    Empty strings are ignored. A column with no values at all is
    NVARCHAR(255).

    Args:
        values: Column values as read from the file

    Returns:
        ColumnTypeInfo for the column
    """
    present: List[str] = [v.strip() for v in values if v is not None and v.strip() != ""]
    if not present:
        return ColumnTypeInfo(data_type="NVARCHAR", max_length=DEFAULT_NVARCHAR_LENGTH)

    if all(_is_guid(v) for v in present):
        return ColumnTypeInfo(data_type="UNIQUEIDENTIFIER")
    if all(v.lower() in _BOOLEAN_VALUES for v in present):
        return ColumnTypeInfo(data_type="BIT")
    if all(_is_int(v) for v in present):
        return ColumnTypeInfo(data_type="INT")
    if all(_DECIMAL_PATTERN.match(v) for v in present):
        return _decimal_info(present)
    if all(_is_datetime(v) for v in present):
        return ColumnTypeInfo(data_type="DATETIME2")

    return ColumnTypeInfo(data_type="NVARCHAR", max_length=_nvarchar_length(present))


def analyze_columns(headers: Sequence[str], records: Sequence[Dict[str, str]]) -> Dict[str, ColumnTypeInfo]:
    """Infer the type of every column of a batch."""
    return {
        header: analyze_column(record.get(header, "") for record in records)
        for header in headers
    }
