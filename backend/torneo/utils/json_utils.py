"""JSON utilities using orjson.

Usage:
    from torneo.utils.json_utils import json_dumps, json_loads

    payload = json_dumps({"price": Decimal("50.00")}, sort_keys=True)
    data = json_loads(payload)
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import orjson


def _default_serializer(obj: Any) -> Any:
    """Custom serializer for types not natively supported by orjson."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, bytes):
        return obj.decode("utf-8")
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _options(pretty: bool, sort_keys: bool) -> int:
    options = orjson.OPT_UTC_Z
    if pretty:
        options |= orjson.OPT_INDENT_2
    if sort_keys:
        options |= orjson.OPT_SORT_KEYS
    return options


def json_dumps(data: Any, *, pretty: bool = False, sort_keys: bool = False) -> str:
    """Serialize data to a JSON string using orjson.

    Args:
        data: Data to serialize
        pretty: If True, format with indentation
        sort_keys: If True, emit object keys in sorted order (deterministic output)

    Returns:
        JSON string
    """
    return orjson.dumps(
        data, default=_default_serializer, option=_options(pretty, sort_keys)
    ).decode("utf-8")


def json_loads(data: str | bytes) -> Any:
    """Deserialize JSON string/bytes to Python object."""
    return orjson.loads(data)
