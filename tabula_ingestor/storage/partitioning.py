"""Partition key derivation for normalized records."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from ..schemas.storage import PartitionStrategy

DEFAULT_PARTITION = "default"


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def rolling_hash(text: str) -> int:
    """Return ``hash * 31 + code`` folded over the characters of ``text``.

    Each character contributes one 16-bit code: characters outside the Basic
    Multilingual Plane count only as their high surrogate. The shift is
    truncated to a signed 32-bit integer on every step while the subtraction
    is not.
    """

    result = 0
    for char in text:
        code = ord(char)
        if code > 0xFFFF:
            code = 0xD800 + ((code - 0x10000) >> 10)
        result = _to_int32(_to_int32(result) << 5) - result + code
    return result


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Numeric timestamps are epoch milliseconds.
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def _time_key(value: Any, interval: str) -> str:
    moment = _as_datetime(value)
    if moment is None:
        return DEFAULT_PARTITION
    if interval == "week":
        monday = moment - timedelta(days=moment.weekday())
        return f"{monday.year}-{monday.month}-{monday.day}"
    if interval == "month":
        return f"{moment.year}-{moment.month}"
    if interval == "year":
        return f"{moment.year}"
    return f"{moment.year}-{moment.month}-{moment.day}"


def _hash_key(value: Any) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, float) and value.is_integer():
        text = str(int(value))
    else:
        text = str(value)
    return format(rolling_hash(text), "x")


def _coerce_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return value
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def _in_range(value: Any, minimum: Any, maximum: Any) -> bool:
    if isinstance(minimum, (int, float, Decimal)) and isinstance(maximum, (int, float, Decimal)):
        value, minimum, maximum = _coerce_number(value), _coerce_number(minimum), _coerce_number(maximum)
    try:
        return minimum <= value <= maximum
    except TypeError:
        return False


def _strict_equal(left: Any, right: Any) -> bool:
    numeric = (int, float, Decimal)
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if isinstance(left, numeric) and isinstance(right, numeric):
        return left == right
    return type(left) is type(right) and left == right


def generate_partition_key(data: Mapping[str, Any], strategy: PartitionStrategy) -> str:
    """Return the partition key of a record under ``strategy``.

    A missing (or null) field always maps to ``"default"``, as does any value
    that matches no configured range or list entry.
    """

    value = data.get(strategy.field)
    if value is None:
        return DEFAULT_PARTITION

    if strategy.type == "time":
        return _time_key(value, strategy.interval)
    if strategy.type == "hash":
        return _hash_key(value)
    if strategy.type == "range":
        for index, bucket in enumerate(strategy.ranges):
            if _in_range(value, bucket.min, bucket.max):
                return f"range_{index}"
        return DEFAULT_PARTITION
    if strategy.type == "list":
        for index, candidate in enumerate(strategy.values):
            if _strict_equal(candidate, value):
                return f"list_{index}"
        return DEFAULT_PARTITION
    return DEFAULT_PARTITION
