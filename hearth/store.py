"""Store: CRUD and queries over one declared store.

Every operation takes an optional ``transaction``. Without one, the operation
opens its own through the engine and commits it on success (or aborts it on
any exception). A transaction passed in is never committed or aborted here;
whoever opened it finishes it. That lets callers thread one transaction
through several store calls::

    with engine.transaction() as tx:
        project = engine.stores["Project"].create({"name": "Roof"}, tx)
        engine.stores["Task"].create({"projectId": project["id"]}, tx)
"""

import contextlib
import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from hearth.merge import merge_records
from hearth.protocols import (
    ConsistencyError,
    ConstraintError,
    QueryAmbiguityError,
    QueryError,
    StorageError,
)
from hearth.query import compile_condition, evaluate
from hearth.serializers import key_from_record, key_to_storage
from hearth.storage.sqlite import ASC, DESC, Transaction, TransactionMode
from hearth.types import (
    MISSING,
    FindResult,
    KeyPath,
    StoreDefinition,
    assign_path,
    extract_key,
)

logger = logging.getLogger(__name__)

QUERY_KEYS = frozenset({"where", "limit", "offset", "order"})


def _coerce_bound(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise QueryError(f"{name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise QueryError(f"{name} must be an integer, got {value!r}") from e
    if number < 0:
        raise QueryError(f"{name} must not be negative")
    return number


def _coerce_order(value: Any) -> Optional[Tuple[str, str]]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        name, direction = value, ASC
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        name, direction = value
    else:
        raise QueryError(f"order must be an index name or (index, direction), got {value!r}")
    if not isinstance(direction, str) or direction.upper() not in (ASC, DESC):
        raise QueryError(f"order direction must be ASC or DESC, got {direction!r}")
    return name, direction.upper()


@dataclass(frozen=True)
class Query:
    """A filtered, ordered, paginated read.

    Attributes:
        where: Condition mapping (see ``hearth.query``)
        limit: Maximum rows returned; None means unbounded
        offset: Matches skipped before the first returned row
        order: ``(index name, "ASC" | "DESC")``; None scans primary keys
    """

    where: Optional[Mapping[str, Any]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    order: Optional[Tuple[str, str]] = None

    def __post_init__(self):
        object.__setattr__(self, "limit", _coerce_bound("limit", self.limit))
        object.__setattr__(self, "offset", _coerce_bound("offset", self.offset))
        object.__setattr__(self, "order", _coerce_order(self.order))

    @classmethod
    def coerce(cls, value: Any) -> Optional["Query"]:
        """Build a Query from a Query, a query mapping or a bare condition.

        A mapping whose keys are all query keys (``where``, ``limit``,
        ``offset``, ``order``) is a query; any other mapping is a condition.
        """
        if value is None or isinstance(value, Query):
            return value
        if not isinstance(value, Mapping):
            raise QueryError(f"Expected a query mapping, got {type(value).__name__}")
        if value and set(value) <= QUERY_KEYS:
            return cls(**value)
        return cls(where=value)


def _same_key(left: Any, right: Any) -> bool:
    try:
        return key_to_storage(key_from_record(left)) == key_to_storage(key_from_record(right))
    except StorageError:
        return False


class Store:
    """Operations on one store.

    Args:
        definition: The store's declaration
        host: The owning engine; provides ``transaction(mode)``,
            ``format_for_storage(data)``, ``_add_to_sync_queue(tx, store, key)``
            and ``stores``
    """

    def __init__(self, definition: StoreDefinition, host):
        self.definition = definition
        self._host = host

    def __repr__(self) -> str:
        return f"Store({self.name!r})"

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def key_path(self) -> KeyPath:
        return self.definition.key_path

    @contextlib.contextmanager
    def _transaction_scope(
        self, transaction: Optional[Transaction], mode: TransactionMode
    ) -> Iterator[Transaction]:
        if transaction is not None:
            yield transaction
            return
        with self._host.transaction(mode) as tx:
            yield tx

    def _scan_source(self, order: Optional[Tuple[str, str]]) -> Tuple[Optional[KeyPath], str]:
        if order is None:
            return None, ASC
        name, direction = order
        if name in self.definition.indexes:
            return self.definition.indexes[name], direction
        if name == self.key_path:
            return None, direction
        raise QueryError(f"Store {self.name} has no index named {name}")

    def _key_of(self, record: Dict[str, Any]) -> Any:
        key = extract_key(record, self.key_path)
        if key is MISSING or key is None or (isinstance(key, tuple) and None in key):
            raise ConstraintError(
                f"Record in store {self.name} has no primary key at {self.key_path!r}"
            )
        return key

    # === Reads ===

    def count(self, transaction: Optional[Transaction] = None) -> int:
        with self._transaction_scope(transaction, TransactionMode.READ) as tx:
            return tx.count(self.name)

    def find_many_and_count(
        self,
        query: Union[Query, Mapping[str, Any], None] = None,
        transaction: Optional[Transaction] = None,
    ) -> FindResult:
        """Rows of the requested page plus the total number of matches.

        ``count`` is the number of records matching ``where`` regardless of
        ``limit`` and ``offset``.

        ``where``, ``limit``, ``offset`` and ``order`` are reserved: a bare
        condition made only of those keys is read as a query. To filter on a
        record field with one of these names, nest it under ``where``, as in
        ``{"where": {"order": 2}}``.
        """
        query = Query.coerce(query)
        with self._transaction_scope(transaction, TransactionMode.READ) as tx:
            if query is None:
                rows = list(tx.scan(self.name, key_path=self.key_path))
                return FindResult(rows=rows, count=len(rows))

            condition = compile_condition(query.where)
            index_key_path, direction = self._scan_source(query.order)
            start = query.offset or 0
            stop = None if query.limit is None else start + query.limit

            rows = []
            count = 0
            for record in tx.scan(self.name, index_key_path, direction, self.key_path):
                if not evaluate(condition, record):
                    continue
                if count >= start and (stop is None or count < stop):
                    rows.append(record)
                count += 1

            return FindResult(rows=rows, count=count)

    def find_many(
        self,
        query: Union[Query, Mapping[str, Any], None] = None,
        transaction: Optional[Transaction] = None,
    ) -> List[Dict[str, Any]]:
        return self.find_many_and_count(query, transaction).rows

    def find_one(
        self, key_or_query: Any, transaction: Optional[Transaction] = None
    ) -> Optional[Dict[str, Any]]:
        """Find a record by primary key, or the single record matching a query.

        Raises:
            QueryAmbiguityError: If a query matches more than one record
        """
        if isinstance(key_or_query, (Query, Mapping)):
            rows = self.find_many(key_or_query, transaction)
            if len(rows) > 1:
                raise QueryAmbiguityError(self.name, len(rows))
            return rows[0] if rows else None

        with self._transaction_scope(transaction, TransactionMode.READ) as tx:
            return tx.get(self.name, key_from_record(key_or_query))

    # === Writes ===

    def create(
        self, data: Mapping[str, Any], transaction: Optional[Transaction] = None
    ) -> Dict[str, Any]:
        """Insert a new record and queue it for sync.

        A missing single-field primary key is generated as a uuid4 string.

        Raises:
            ConstraintError: If the key already exists or a composite key is incomplete
        """
        data = copy.deepcopy(dict(data))
        with self._transaction_scope(transaction, TransactionMode.WRITE) as tx:
            if self.definition.before_create is not None:
                self.definition.before_create(data, tx, self._host.stores)

            record = self._host.format_for_storage(data)
            key = extract_key(record, self.key_path)
            if (key is MISSING or key is None) and isinstance(self.key_path, str):
                key = str(uuid.uuid4())
                assign_path(record, self.key_path, key)
            else:
                key = self._key_of(record)

            tx.insert(self.name, key, record)
            saved = tx.get(self.name, key)
            self._host._add_to_sync_queue(tx, self.name, key)

        logger.debug(f"Created {self.name} {key!r}")
        return saved

    def update(
        self, key: Any, data: Mapping[str, Any], transaction: Optional[Transaction] = None
    ) -> Dict[str, Any]:
        """Merge ``data`` into the record at ``key`` and queue it for sync.

        A record that does not exist yet is inserted from ``data``.

        Raises:
            ConsistencyError: If ``data`` lacks the primary key or carries a
                different one; nothing is written
        """
        data_key = extract_key(data, self.key_path)
        if data_key is MISSING or not _same_key(data_key, key):
            raise ConsistencyError(
                f"Primary key {key!r} does not match the key in the data for store {self.name}"
            )
        key = key_from_record(key)

        with self._transaction_scope(transaction, TransactionMode.WRITE) as tx:
            current = tx.get(self.name, key)
            if current is None:
                merged = copy.deepcopy(dict(data))
            else:
                merged = merge_records(
                    current, dict(data), self.definition.fields, self.definition.id_field
                )
            record = self._host.format_for_storage(merged)
            tx.upsert(self.name, key, record)
            saved = tx.get(self.name, key)
            self._host._add_to_sync_queue(tx, self.name, key)

        logger.debug(f"Updated {self.name} {key!r}")
        return saved

    def delete(self, key: Any, transaction: Optional[Transaction] = None) -> bool:
        """Delete a record; the deletion is queued so sync sends a tombstone.

        Returns:
            True if a record was deleted
        """
        key = key_from_record(key)
        with self._transaction_scope(transaction, TransactionMode.WRITE) as tx:
            deleted = tx.delete(self.name, key) > 0
            if deleted:
                self._host._add_to_sync_queue(tx, self.name, key)
        return deleted

    def clear(self, transaction: Optional[Transaction] = None) -> int:
        """Delete every record. Local only: nothing is queued."""
        with self._transaction_scope(transaction, TransactionMode.WRITE) as tx:
            return tx.clear(self.name)

    def put(
        self, data: Mapping[str, Any], transaction: Optional[Transaction] = None
    ) -> Dict[str, Any]:
        """Upsert a record without queueing it (remote-origin writes)."""
        record = self._host.format_for_storage(dict(data))
        key = self._key_of(record)
        with self._transaction_scope(transaction, TransactionMode.WRITE) as tx:
            tx.upsert(self.name, key, record)
        return record
