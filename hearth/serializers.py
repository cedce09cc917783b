"""Storage normalisation helpers.

Records are stored as JSON text. Before a write, structured values that JSON
cannot express (datetimes, dates, UUIDs, decimals, sets, tuples, enums) are
converted into plain JSON values so that what is read back equals what the
store reports after the write.
"""

import json
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from hearth.protocols import StorageError
from hearth.types import KeyPath, format_timestamp


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not storable")


def to_json(value: Any) -> str:
    """Serialize a value for storage."""
    try:
        return json.dumps(
            value,
            default=_json_default,
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        )
    except (TypeError, ValueError) as e:
        raise StorageError(f"Cannot serialize value for storage: {e}") from e


def from_json(text: Optional[str]) -> Any:
    if text is None:
        return None
    return json.loads(text)


def format_for_storage(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively normalise a record into plain JSON values.

    Works on a copy; the caller's dict is left untouched.
    """
    return json.loads(to_json(data))


def key_to_storage(key: Any) -> Any:
    """Map a primary key to the SQL value stored in the ``pk`` column.

    Strings and numbers are stored natively so their SQLite ordering is kept.
    Composite keys (tuples or lists) and anything else become JSON text.
    """
    if isinstance(key, bool) or key is None:
        raise StorageError(f"Invalid primary key: {key!r}")
    if isinstance(key, (str, int, float)):
        return key
    if isinstance(key, (tuple, list)):
        return to_json(list(key))
    return to_json(key)


def key_from_record(key: Any) -> Any:
    """Normalise a key read back out of a JSON record (lists become tuples)."""
    if isinstance(key, list):
        return tuple(key)
    return key


def json_path(path: str) -> str:
    """Build a ``json_extract`` path for a dot-separated field path."""
    segments = []
    for segment in path.split("."):
        escaped = segment.replace("\\", "\\\\").replace('"', '\\"')
        segments.append(f'"{escaped}"')
    return "$." + ".".join(segments)


def key_path_to_json(key_path: Optional[KeyPath]) -> str:
    """Serialize a key path for the schema catalog."""
    if isinstance(key_path, tuple):
        return json.dumps(list(key_path))
    return json.dumps(key_path)


def key_path_from_json(text: str) -> Optional[KeyPath]:
    value = json.loads(text)
    if isinstance(value, list):
        return tuple(value)
    return value
