"""
Shared types for hearth.

Store definitions, schema snapshots, field shapes, sync queue entries and the
result objects returned by sync, populate and queries live here. These are
the shared vocabulary between the engine, the stores, the storage backend and
the sync engine.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from hearth.protocols import ConfigValidationError

# Store names with this prefix belong to the engine itself.
RESERVED_PREFIX = "__"

KeyPath = Union[str, Tuple[str, ...]]


class _Missing:
    """Sentinel for a field path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width ISO string that sorts lexically."""
    return as_utc(value).isoformat(timespec="microseconds")


def parse_datetime(value: Union[str, datetime]) -> datetime:
    """Parse an ISO datetime string (``Z`` suffix accepted) into aware UTC.

    Raises:
        ValueError: If the value is not an ISO datetime
    """
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid ISO datetime: {value!r}")
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class MonotonicClock:
    """Per-process clock whose readings strictly increase.

    Two queue entries created within the same microsecond still get distinct,
    ordered timestamps.
    """

    def __init__(self, now_fn: Optional[Callable[[], datetime]] = None):
        self._now_fn = now_fn or utc_now
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = as_utc(self._now_fn())
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current

    def timestamp(self) -> str:
        return format_timestamp(self.now())


# === Key paths ===


def normalize_key_path(key_path: Any) -> KeyPath:
    """Validate a key path and return its canonical form.

    A single field path stays a string; a composite path becomes a tuple.

    Raises:
        ConfigValidationError: If the key path is empty or not made of strings
    """
    if isinstance(key_path, str):
        if not key_path or any(not segment for segment in key_path.split(".")):
            raise ConfigValidationError(f"Invalid key path: {key_path!r}")
        return key_path
    if isinstance(key_path, (list, tuple)) and key_path:
        return tuple(normalize_key_path(part) for part in key_path)
    raise ConfigValidationError(f"Invalid key path: {key_path!r}")


def resolve_path(record: Any, path: str) -> Any:
    """Walk a dot-separated path through nested dicts; MISSING if it breaks."""
    value = record
    for segment in path.split("."):
        if not isinstance(value, dict) or segment not in value:
            return MISSING
        value = value[segment]
    return value


def extract_key(record: Any, key_path: KeyPath) -> Any:
    """Read a record's key at ``key_path``; composite paths give a tuple."""
    if isinstance(key_path, tuple):
        parts = tuple(resolve_path(record, path) for path in key_path)
        if any(part is MISSING for part in parts):
            return MISSING
        return parts
    return resolve_path(record, key_path)


def assign_path(record: Dict[str, Any], path: str, value: Any) -> None:
    """Set ``value`` at a dot-separated path, creating nested dicts."""
    segments = path.split(".")
    target = record
    for segment in segments[:-1]:
        target = target.setdefault(segment, {})
    target[segments[-1]] = value


# === Field shapes ===


class FieldKind(str, Enum):
    """How a field is reconciled when a record is updated."""

    SCALAR = "scalar"  # update value replaces the current one
    OBJECT = "object"  # nested fields merged recursively
    RECORDS = "records"  # list of records merged by their id field
    LIST = "list"  # whole list replaced


@dataclass(frozen=True)
class FieldShape:
    """Declared shape of one record field.

    Attributes:
        kind: How the field merges
        id_field: Identifier field of list elements (RECORDS only)
        fields: Shapes of nested fields (OBJECT and RECORDS)
    """

    kind: FieldKind = FieldKind.SCALAR
    id_field: str = "id"
    fields: Mapping[str, "FieldShape"] = field(default_factory=dict)

    @classmethod
    def scalar(cls) -> "FieldShape":
        return cls(FieldKind.SCALAR)

    @classmethod
    def object(cls, **fields: "FieldShape") -> "FieldShape":
        return cls(FieldKind.OBJECT, fields=fields)

    @classmethod
    def records(cls, id_field: str = "id", **fields: "FieldShape") -> "FieldShape":
        return cls(FieldKind.RECORDS, id_field=id_field, fields=fields)

    @classmethod
    def list(cls) -> "FieldShape":
        return cls(FieldKind.LIST)


# === Schema ===


@dataclass(frozen=True)
class StoreSchema:
    """Storage layout of one store: its key path and its indexes."""

    key_path: Optional[KeyPath]
    indexes: Mapping[str, KeyPath] = field(default_factory=dict)


SchemaSnapshot = Dict[str, StoreSchema]


_STORE_OPTION_KEYS = frozenset({"name", "key_path", "indexes", "fields", "before_create"})


@dataclass(frozen=True)
class StoreDefinition:
    """A declared store.

    Attributes:
        name: Unique store name
        key_path: Field (or ordered fields) holding the primary key
        indexes: Index name -> key path
        fields: Optional field shapes used when merging updates
        before_create: Optional ``hook(data, transaction, stores)`` run before
            every insert; may mutate ``data`` or raise to cancel the create
    """

    name: str
    key_path: KeyPath = "id"
    indexes: Mapping[str, KeyPath] = field(default_factory=dict)
    fields: Mapping[str, FieldShape] = field(default_factory=dict)
    before_create: Optional[Callable[..., Any]] = None

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise ConfigValidationError("Store name is required")
        if self.name.startswith(RESERVED_PREFIX):
            raise ConfigValidationError(
                f"Store name '{self.name}' uses the reserved prefix '{RESERVED_PREFIX}'"
            )
        object.__setattr__(self, "key_path", normalize_key_path(self.key_path))

        indexes = {}
        for index_name, index_key_path in dict(self.indexes).items():
            if not isinstance(index_name, str) or not index_name:
                raise ConfigValidationError(f"Invalid index name on store {self.name}")
            indexes[index_name] = normalize_key_path(index_key_path)
        object.__setattr__(self, "indexes", MappingProxyType(indexes))

        for field_name, shape in dict(self.fields).items():
            if not isinstance(shape, FieldShape):
                raise ConfigValidationError(
                    f"Field '{field_name}' on store {self.name} must be a FieldShape"
                )
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

        if self.before_create is not None and not callable(self.before_create):
            raise ConfigValidationError(f"before_create on store {self.name} must be callable")

    @property
    def id_field(self) -> str:
        """Identifier field used for merging nested record lists."""
        return self.key_path if isinstance(self.key_path, str) else "id"

    def schema(self) -> StoreSchema:
        return StoreSchema(key_path=self.key_path, indexes=dict(self.indexes))

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "StoreDefinition":
        """Build a definition from a plain mapping with a closed key set."""
        unknown = set(options) - _STORE_OPTION_KEYS
        if unknown:
            raise ConfigValidationError(
                f"Unknown store options: {', '.join(sorted(unknown))}"
            )
        if "name" not in options:
            raise ConfigValidationError("Store name is required")
        return cls(**options)


# === Sync ===


@dataclass(frozen=True)
class SyncQueueEntry:
    """A (store, primary key) pair waiting to be pushed."""

    id: str
    created_at: str
    store_name: str
    primary_key: Any

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "storeName": self.store_name,
            "primaryKey": self.primary_key,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SyncQueueEntry":
        return cls(
            id=record["id"],
            created_at=record["createdAt"],
            store_name=record["storeName"],
            primary_key=record["primaryKey"],
        )


class SyncStatus(str, Enum):
    """Outcome of a completed sync round."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    pushed: int = 0  # Deduplicated queue entries sent
    pulled: int = 0  # Remote changes applied locally
    skipped: int = 0  # Remote changes ignored (unknown store or no data)
    checkpoint: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is SyncStatus.SUCCESS


@dataclass
class PopulateResult:
    """Result of a populate operation."""

    applied: Dict[str, int] = field(default_factory=dict)  # store -> rows written
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class FindResult:
    """Rows of one page plus the total number of matches."""

    rows: List[Dict[str, Any]]
    count: int

    def to_dict(self, count_key: str = "count", data_key: str = "rows") -> Dict[str, Any]:
        return {count_key: self.count, data_key: self.rows}
