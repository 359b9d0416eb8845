"""Shared value helpers for canvasflow core modules.

Node outputs are JSON-like records (dicts, lists, strings, numbers, booleans,
None). These helpers give every module the same view of how such values are
printed, typed, compared as numbers, and merged.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any

_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_text(value: Any, indent: int | None = None) -> str:
    """Render a value as text the way the editor displays it.

    None renders as an empty string, booleans as ``true``/``false``, and
    structured values as JSON.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, indent=indent, default=str)
    return str(value)


def type_name(value: Any) -> str:
    """JSON type name of a value (``string``, ``number``, ``object``...)."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    return "object"


def to_number(value: Any) -> int | float | None:
    """Return ``value`` as a number if it is numeric or a numeric-looking string.

    Booleans are not numbers here. Returns None when the value does not look
    numeric.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not _NUMBER_PATTERN.match(text):
            return None
        number = float(text)
        if number.is_integer() and re.fullmatch(r"[+-]?\d+", text):
            return int(text)
        return number
    return None


def deep_merge(*objects: Any) -> dict[str, Any]:
    """Recursively merge dicts left to right.

    Nested dicts are merged key by key; any other value (lists included) from
    a later object replaces the earlier one. Non-dict arguments are ignored.
    """
    result: dict[str, Any] = {}
    for obj in objects:
        if not isinstance(obj, dict):
            continue
        for key, value in obj.items():
            existing = result.get(key)
            if isinstance(value, dict) and isinstance(existing, dict):
                result[key] = deep_merge(existing, value)
            else:
                result[key] = value
    return result
