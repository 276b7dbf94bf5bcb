"""orjson helpers shared by the result and audit encoders.

Decimals travel as strings (exact, including "Infinity") and datetimes as
ISO-8601 strings, so a decode reproduces the encoded values exactly.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union

import orjson


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def dumps(content: Any) -> bytes:
    return orjson.dumps(
        content,
        default=_default,
        option=orjson.OPT_PASSTHROUGH_DATETIME | orjson.OPT_SORT_KEYS,
    )


def loads(data: Union[bytes, str]) -> Any:
    return orjson.loads(data)


def decode_decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, (bool, float)):
        raise ValueError(f"Expected a decimal string, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid decimal value: {value!r}") from e


def decode_datetime(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO-8601 string, got {value!r}")
    return datetime.fromisoformat(value)
