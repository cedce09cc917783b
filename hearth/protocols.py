"""Protocol definitions and errors for Hearth.

Hearth talks to two kinds of collaborators it does not own:

- a storage introspector, which can report the persisted schema and apply a
  migration plan (implemented by ``SQLiteDatabase``)
- a sync transport, which performs the populate and sync round trips
  (implemented by ``HttpTransport``)

Both are expressed as ``typing.Protocol`` classes so tests and hosts can swap
in their own implementations.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from hearth.models import RemoteChange, SyncBatchItem
    from hearth.storage.schema import MigrationOp
    from hearth.types import SchemaSnapshot


# =============================================================================
# ERRORS
# =============================================================================


class HearthError(Exception):
    """Base for all hearth errors."""

    pass


class ConfigValidationError(HearthError, ValueError):
    """Raised at construction when a setup field is missing or malformed."""

    pass


class StorageError(HearthError):
    """Raised by the storage layer on failures it can name."""

    pass


class ConstraintError(StorageError):
    """Raised when a write would violate a key constraint.

    E.g., inserting a record whose primary key already exists, or a record
    that lacks a usable primary key.
    """

    pass


class MigrationError(HearthError):
    """Raised when a migration plan cannot be applied."""

    pass


class MigrationTimeout(MigrationError):
    """Raised when waiting for another caller's migration takes too long."""

    def __init__(self, timeout: float):
        super().__init__(f"Schema was not ready after {timeout:g}s")
        self.timeout = timeout


class QueryError(HearthError):
    """Raised for malformed queries (unknown operator, bad limit, bad order)."""

    pass


class QueryAmbiguityError(QueryError):
    """Raised when ``find_one`` by condition matches more than one record."""

    def __init__(self, store_name: str, found: int):
        super().__init__(f"Expecting one result from {store_name}, {found} found")
        self.store_name = store_name
        self.found = found


class ConsistencyError(HearthError):
    """Raised when an update payload's primary key does not match its target."""

    pass


class TransportError(HearthError):
    """Raised on network failure or a non-success response from the remote."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncError(HearthError):
    """Raised when a sync or populate round cannot complete."""

    pass


class RouteHandlerError(HearthError):
    """Wraps an exception raised by a caller-supplied route handler.

    Never propagated past the interception layer; handed to the
    ``on_route_error`` hook instead.
    """

    def __init__(self, route: Any, cause: BaseException):
        super().__init__(f"Route handler error: {cause}")
        self.route = route
        self.cause = cause


# =============================================================================
# COLLABORATOR PROTOCOLS
# =============================================================================


@runtime_checkable
class SchemaIntrospector(Protocol):
    """Storage that can describe and migrate its own layout."""

    def read_schema(self) -> "SchemaSnapshot":
        """Return the persisted schema snapshot."""
        ...

    def upgrade(self, ops: Sequence["MigrationOp"]) -> int:
        """Apply all ops atomically and return the new schema version."""
        ...


@runtime_checkable
class SyncTransport(Protocol):
    """Remote endpoints used by populate and sync."""

    def populate(self, store_names: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Fetch a full snapshot of the given stores."""
        ...

    def sync(
        self, checkpoint: datetime, batch: List["SyncBatchItem"]
    ) -> List["RemoteChange"]:
        """Push local changes and return remote changes since ``checkpoint``."""
        ...
