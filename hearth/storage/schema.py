"""Schema layout, migration planning and DDL for hearth's SQLite storage.

Contains:
- Internal store definitions (``__Metadata``, ``__SyncQueue``)
- Migration operations and the planner that diffs declared vs persisted
- The catalog table that records what is persisted
- DDL for applying each migration operation
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

from hearth.protocols import MigrationError, SchemaIntrospector
from hearth.serializers import json_path, key_path_from_json, key_path_to_json
from hearth.types import KeyPath, SchemaSnapshot, StoreDefinition, StoreSchema

logger = logging.getLogger(__name__)

CATALOG_TABLE = "_hearth_catalog"

METADATA_STORE = "__Metadata"
SYNC_QUEUE_STORE = "__SyncQueue"
SYNC_QUEUE_CREATED_AT_INDEX = "createdAt"

# Engine-owned stores, present in every declared schema
INTERNAL_STORES = {
    METADATA_STORE: StoreSchema(key_path=None, indexes={}),
    SYNC_QUEUE_STORE: StoreSchema(
        key_path="id", indexes={SYNC_QUEUE_CREATED_AT_INDEX: "createdAt"}
    ),
}

CATALOG_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {CATALOG_TABLE} (
    store_name TEXT NOT NULL,
    index_name TEXT NOT NULL DEFAULT '',
    key_path TEXT,
    PRIMARY KEY (store_name, index_name)
)
"""


# =============================================================================
# Migration operations
# =============================================================================


@dataclass(frozen=True)
class CreateStore:
    name: str
    key_path: Optional[KeyPath]


@dataclass(frozen=True)
class DeleteStore:
    name: str


@dataclass(frozen=True)
class CreateIndex:
    store: str
    index: str
    key_path: KeyPath


@dataclass(frozen=True)
class DeleteIndex:
    store: str
    index: str


MigrationOp = Union[CreateStore, DeleteStore, CreateIndex, DeleteIndex]


def describe_op(op: MigrationOp) -> str:
    """One-line human description of a migration op."""
    if isinstance(op, CreateStore):
        return f"create store {op.name} (key {op.key_path!r})"
    if isinstance(op, DeleteStore):
        return f"delete store {op.name}"
    if isinstance(op, CreateIndex):
        return f"create index {op.store}.{op.index} on {op.key_path!r}"
    return f"delete index {op.store}.{op.index}"


# =============================================================================
# Planning
# =============================================================================


def declared_snapshot(definitions: Iterable[StoreDefinition]) -> SchemaSnapshot:
    """Snapshot of the declared stores plus the internal ones."""
    snapshot: SchemaSnapshot = dict(INTERNAL_STORES)
    for definition in definitions:
        snapshot[definition.name] = definition.schema()
    return snapshot


def plan_migration(declared: SchemaSnapshot, persisted: SchemaSnapshot) -> List[MigrationOp]:
    """Diff two schema snapshots into an ordered list of migration ops.

    Order: index changes on surviving stores, then store deletions, then store
    creations followed by their indexes. A store whose primary key path
    changed is deleted and created again.
    """
    ops: List[MigrationOp] = []

    recreated = {
        name
        for name, schema in declared.items()
        if name in persisted and persisted[name].key_path != schema.key_path
    }

    for name, schema in declared.items():
        if name not in persisted or name in recreated:
            continue
        old_indexes = persisted[name].indexes
        for index_name in old_indexes:
            if index_name not in schema.indexes:
                ops.append(DeleteIndex(name, index_name))
        for index_name, key_path in schema.indexes.items():
            if index_name not in old_indexes:
                ops.append(CreateIndex(name, index_name, key_path))
            elif old_indexes[index_name] != key_path:
                ops.append(DeleteIndex(name, index_name))
                ops.append(CreateIndex(name, index_name, key_path))

    for name in persisted:
        if name not in declared or name in recreated:
            ops.append(DeleteStore(name))

    for name, schema in declared.items():
        if name in persisted and name not in recreated:
            continue
        ops.append(CreateStore(name, schema.key_path))
        for index_name, key_path in schema.indexes.items():
            ops.append(CreateIndex(name, index_name, key_path))

    return ops


class SchemaPlanner:
    """Plans and applies migrations against a schema introspector.

    Args:
        introspector: Storage that reports its schema and applies op lists
    """

    def __init__(self, introspector: SchemaIntrospector):
        self._introspector = introspector

    def plan(self, declared: SchemaSnapshot) -> List[MigrationOp]:
        """Dry run: the ops ``migrate`` would apply."""
        return plan_migration(declared, self._introspector.read_schema())

    def migrate(self, declared: SchemaSnapshot) -> List[MigrationOp]:
        ops = self.plan(declared)
        if not ops:
            logger.debug("Schema up to date, nothing to migrate")
            return ops
        for op in ops:
            logger.debug(f"Migration op: {describe_op(op)}")
        version = self._introspector.upgrade(ops)
        logger.info(f"Applied {len(ops)} migration ops, schema version is now {version}")
        return ops


# =============================================================================
# DDL
# =============================================================================


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def table_name(store_name: str) -> str:
    """Quoted table name holding a store's records."""
    return quote_identifier(f"s_{store_name}")


def index_name(store_name: str, index: str) -> str:
    """Quoted, collision-free SQL index name for a store index."""
    return quote_identifier(f"i_{len(store_name)}_{store_name}_{index}")


def key_path_columns(key_path: KeyPath) -> List[str]:
    """SQL expressions extracting each component of a key path from ``data``."""
    paths = key_path if isinstance(key_path, tuple) else (key_path,)
    expressions = []
    for path in paths:
        literal = json_path(path).replace("'", "''")
        expressions.append(f"json_extract(data, '{literal}')")
    return expressions


def init_catalog(conn: sqlite3.Connection) -> None:
    conn.execute(CATALOG_SCHEMA)


def read_catalog(conn: sqlite3.Connection) -> SchemaSnapshot:
    """Read the persisted snapshot from the catalog table."""
    rows = conn.execute(
        f"SELECT store_name, index_name, key_path FROM {CATALOG_TABLE} "
        "ORDER BY store_name, index_name"
    ).fetchall()

    stores = {}
    indexes = {}
    for row in rows:
        store, index, key_path = row[0], row[1], key_path_from_json(row[2])
        if index == "":
            stores[store] = key_path
        else:
            indexes.setdefault(store, {})[index] = key_path

    return {
        store: StoreSchema(key_path=key_path, indexes=indexes.get(store, {}))
        for store, key_path in stores.items()
    }


def apply_op(conn: sqlite3.Connection, op: MigrationOp) -> None:
    """Execute one migration op on an open transaction."""
    if isinstance(op, CreateStore):
        conn.execute(
            f"CREATE TABLE {table_name(op.name)} "
            "(pk NOT NULL PRIMARY KEY, data TEXT NOT NULL) WITHOUT ROWID"
        )
        conn.execute(
            f"INSERT INTO {CATALOG_TABLE} (store_name, index_name, key_path) VALUES (?, '', ?)",
            (op.name, key_path_to_json(op.key_path)),
        )
    elif isinstance(op, DeleteStore):
        conn.execute(f"DROP TABLE IF EXISTS {table_name(op.name)}")
        conn.execute(f"DELETE FROM {CATALOG_TABLE} WHERE store_name = ?", (op.name,))
    elif isinstance(op, CreateIndex):
        columns = ", ".join(key_path_columns(op.key_path))
        conn.execute(
            f"CREATE INDEX {index_name(op.store, op.index)} ON {table_name(op.store)} ({columns})"
        )
        conn.execute(
            f"INSERT INTO {CATALOG_TABLE} (store_name, index_name, key_path) VALUES (?, ?, ?)",
            (op.store, op.index, key_path_to_json(op.key_path)),
        )
    elif isinstance(op, DeleteIndex):
        conn.execute(f"DROP INDEX IF EXISTS {index_name(op.store, op.index)}")
        conn.execute(
            f"DELETE FROM {CATALOG_TABLE} WHERE store_name = ? AND index_name = ?",
            (op.store, op.index),
        )
    else:
        raise MigrationError(f"Unknown migration op: {op!r}")


def apply_ops(conn: sqlite3.Connection, ops: Sequence[MigrationOp]) -> None:
    for op in ops:
        try:
            apply_op(conn, op)
        except sqlite3.Error as e:
            raise MigrationError(f"Failed to {describe_op(op)}: {e}") from e
